"""Best-effort audit trail writes."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, TYPE_CHECKING

from ..models import AuditLogEntry
from ..utils import utc_now

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..db import ChallengeStore

LOGGER = logging.getLogger(__name__)


def write_audit_log(
    store: "ChallengeStore",
    *,
    action: str,
    entity_type: str,
    actor_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Append an audit entry; return False instead of raising on failure.

    Audit writes never change the outcome of the operation they describe.
    """

    entry = AuditLogEntry(
        action=action,
        entity_type=entity_type,
        actor_id=actor_id,
        entity_id=entity_id,
        metadata=dict(metadata or {}),
        created_at=utc_now(),
    )
    try:
        store.write_audit_log(entry)
    except Exception:  # noqa: BLE001
        LOGGER.warning(
            "Failed to write audit log action=%s entity_type=%s actor=%s",
            action,
            entity_type,
            actor_id,
            exc_info=True,
        )
        return False
    return True


__all__ = ["write_audit_log"]
