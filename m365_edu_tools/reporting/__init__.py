"""Reporting package — CSV and JSON input/output."""

from .csv_export import CsvSink, read_csv_rows, read_id_column, export_batch_report
from .json_export import export_run_summary

__all__ = [
    "CsvSink",
    "read_csv_rows",
    "read_id_column",
    "export_batch_report",
    "export_run_summary",
]
