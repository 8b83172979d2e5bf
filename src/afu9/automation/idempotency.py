"""
Idempotency key derivation.

Keys are built by walking the policy's ``idempotencyKeyTemplate`` in order,
so the caller's mapping order never influences the result.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from afu9.lawbook.schema import canonical_json, sha256_hex

KEY_SEPARATOR = "::"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list, tuple)):
        return canonical_json(value)
    return str(value)


def build_idempotency_key(
    template: Sequence[str],
    action_context: Mapping[str, Any],
    *,
    action_type: str,
    target_identifier: str,
) -> str:
    """Serialize ``action_context`` fields named by ``template`` as ``field=value::field=value``.

    Fields absent from the context (or None) are skipped. An empty template
    falls back to ``{action_type}:{target_identifier}``.
    """
    if not template:
        return f"{action_type}:{target_identifier}"

    parts = [
        f"{name}={_format_value(action_context[name])}"
        for name in template
        if action_context.get(name) is not None
    ]
    return KEY_SEPARATOR.join(parts)


def hash_idempotency_key(key: str) -> str:
    return sha256_hex(key)


def generate_action_fingerprint(
    action_type: str, target_identifier: str, params: Mapping[str, Any] | None = None
) -> str:
    """Stable fingerprint of an action and its parameters, used to correlate audit rows."""
    return sha256_hex(
        canonical_json(
            {"actionType": action_type, "target": target_identifier, "params": dict(params or {})}
        )
    )
