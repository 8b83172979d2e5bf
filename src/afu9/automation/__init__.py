"""
Automation policy evaluation.

Gatekeeper for automated actions: environment, approval, cooldown and
rate-limit enforcement against the active lawbook, with an append-only audit
trail of every decision.
"""

from afu9.automation.evaluator import AutomationPolicyEvaluator
from afu9.automation.idempotency import (
    build_idempotency_key,
    generate_action_fingerprint,
    hash_idempotency_key,
)
from afu9.automation.models import (
    PolicyDecision,
    PolicyEvaluationContext,
    PolicyEvaluationResult,
    PolicyExecutionRecord,
)
from afu9.automation.repository import AutomationPolicyAuditRepository

__all__ = [
    "AutomationPolicyAuditRepository",
    "AutomationPolicyEvaluator",
    "PolicyDecision",
    "PolicyEvaluationContext",
    "PolicyEvaluationResult",
    "PolicyExecutionRecord",
    "build_idempotency_key",
    "generate_action_fingerprint",
    "hash_idempotency_key",
]
