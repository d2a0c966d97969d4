"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from payledger.models.audit import AuditLog
from payledger.utils.time import utcnow


SENSITIVE_KEYS = {
    "email",
    "signature",
    "card_number",
    "vpa",
    "contact",
    "key_secret",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key == "card_number":
        stripped = str(value).replace(" ", "")
        if len(stripped) <= 4:
            return f"***{stripped}"
        return f"***{stripped[-4:]}"

    if key == "email":
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key in {"vpa", "contact"}:
        text = str(value)
        if len(text) <= 4:
            return "***"
        return f"***{text[-2:]}"

    return "***"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII and secrets masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Stage an audit entry in the shared AuditLog table (caller commits)."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )


def actor_from_principal(principal: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for an authenticated principal."""

    prefix = getattr(principal, "prefix", None)
    if prefix:
        return f"apikey:{prefix}"
    return fallback
