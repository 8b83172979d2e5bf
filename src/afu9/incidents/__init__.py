"""Incidents and their typed evidence."""

from afu9.incidents.evidence import (
    AlbEvidence,
    DeployStatusEvidence,
    EcsEvidence,
    Evidence,
    EvidencePredicate,
    HttpEvidence,
    VerificationEvidenceRef,
    check_all_evidence_predicates,
    check_evidence_predicate,
    find_evidence,
    parse_evidence,
)
from afu9.incidents.repository import IncidentRepository

__all__ = [
    "AlbEvidence",
    "DeployStatusEvidence",
    "EcsEvidence",
    "Evidence",
    "EvidencePredicate",
    "HttpEvidence",
    "IncidentRepository",
    "VerificationEvidenceRef",
    "check_all_evidence_predicates",
    "check_evidence_predicate",
    "find_evidence",
    "parse_evidence",
]
