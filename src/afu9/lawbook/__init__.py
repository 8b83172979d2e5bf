"""
Lawbook: versioned, hashed policy configuration for automated actions.
"""

from afu9.lawbook.cache import LawbookCache
from afu9.lawbook.loader import load_lawbook_file
from afu9.lawbook.repository import LawbookRepository, LawbookVersionRecord
from afu9.lawbook.schema import (
    AutomationPolicy,
    AutomationPolicyAction,
    Lawbook,
    RemediationPolicy,
    canonical_json,
    compute_lawbook_hash,
    parse_lawbook,
    sha256_hex,
)

__all__ = [
    "AutomationPolicy",
    "AutomationPolicyAction",
    "Lawbook",
    "LawbookCache",
    "LawbookRepository",
    "LawbookVersionRecord",
    "RemediationPolicy",
    "canonical_json",
    "compute_lawbook_hash",
    "load_lawbook_file",
    "parse_lawbook",
    "sha256_hex",
]
