"""
Configuration module for M365 Education Tools.
Defines tunable parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone


class ConfigError(Exception):
    """Raised when the configuration is missing or malformed."""
    pass


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty

@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: [
        "https://graph.microsoft.com/.default"
    ])

@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None

    @property
    def tenant_id(self) -> str:
        if self.mode == "delegated" and self.delegated:
            return self.delegated.tenant_id
        if self.certificate:
            return self.certificate.tenant_id
        return ""


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

# Security & Compliance admin API (information barriers)
COMPLIANCE_BASE_URL = "https://ps.compliance.protection.outlook.com/adminapi/beta"
COMPLIANCE_SCOPES = ["https://ps.compliance.protection.outlook.com/.default"]

# Rate limiting / throttling
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops

# members@odata.bind accepts at most 20 references per request
MEMBER_BIND_CHUNK = 20

# School Data Sync writes its attributes through this extension app
SDS_EXTENSION_PREFIX = "extension_fe2174665583431c953114ff7268b7b3_Education_"


# ─── Paging / Batch Settings ────────────────────────────────────────────────

@dataclass
class PagingConfig:
    """Controls for paged exports."""
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = MAX_PAGES_PER_ENDPOINT
    checkpoints: bool = True              # Save next links for --resume


@dataclass
class BatchConfig:
    """Controls for the worker-session batch runner."""
    workers: int = 3                      # Parallel sessions
    delay_seconds: float = 1.0            # Pause after every call
    backoff_seconds: float = 30.0         # First pause after a rate-limit warning
    max_backoff_seconds: float = 300.0
    max_retries: int = 5                  # Rate-limit retries per item
    poll_interval: float = 10.0           # Progress poll period
    timeout_seconds: float = 4 * 3600.0   # Whole batch


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Output directory settings."""
    base_dir: str = ""
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_edu_output")

    @property
    def root(self) -> Path:
        return Path(self.base_dir)

    @property
    def csv_dir(self) -> Path:
        return self.root / "csv"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def state_dir(self) -> Path:
        return self.root / ".state"

    def create_directories(self):
        for d in [self.csv_dir, self.logs_dir, self.state_dir]:
            d.mkdir(parents=True, exist_ok=True)


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class ToolConfig:
    """Top-level configuration for all commands."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    paging: PagingConfig = field(default_factory=PagingConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    what_if: bool = False
    assume_yes: bool = False
    verbose: bool = False

    @classmethod
    def from_file(cls, path) -> "ToolConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}")

        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            try:
                if "certificate" in auth_data:
                    c = auth_data["certificate"]
                    config.auth.certificate = CertificateAuth(
                        tenant_id=c["tenant_id"],
                        client_id=c["client_id"],
                        certificate_path=c.get("certificate_path", "./base64.txt"),
                        certificate_password=c.get("certificate_password", ""),
                    )
                if "delegated" in auth_data:
                    d = auth_data["delegated"]
                    config.auth.delegated = DelegatedAuth(
                        tenant_id=d["tenant_id"],
                        client_id=d["client_id"],
                    )
            except KeyError as e:
                raise ConfigError(f"Missing auth setting in {path}: {e}")
        for section in ("paging", "batch", "output"):
            for k, v in data.get(section, {}).items():
                target = getattr(config, section)
                if hasattr(target, k):
                    setattr(target, k, v)
        config.what_if = data.get("what_if", False)
        config.assume_yes = data.get("assume_yes", False)
        config.verbose = data.get("verbose", False)
        return config


# ─── Required Permissions ────────────────────────────────────────────────────

REQUIRED_PERMISSIONS = {
    # Exports
    "User.Read.All": "Export users and their School Data Sync attributes",
    "Group.Read.All": "Export groups, sections and group members",
    "AdministrativeUnit.Read.All": "Export schools (administrative units) and their members",

    # Bulk operations
    "GroupMember.ReadWrite.All": "Add and remove group members",
    "Group.ReadWrite.All": "Delete groups",
    "User.ReadWrite.All": "Delete users",
    "AdministrativeUnit.ReadWrite.All": "Delete administrative units",

    # Information barriers (Security & Compliance)
    "Exchange.ManageAsApp": "Invoke compliance cmdlets as the application",
    "Compliance Administrator (role)": "Create and remove segments and barrier policies",
}
