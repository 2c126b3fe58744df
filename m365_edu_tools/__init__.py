"""
M365 Education Tools
====================
Administrative automation for Microsoft 365 Education tenants: paged CSV
exports of users, groups, sections and schools, bulk group membership and
deletion jobs, and information barrier segments and policies.

Mutating commands support a what-if mode and ask for confirmation.
"""

__version__ = "1.0.0"
__author__ = "M365 Education Tools"
