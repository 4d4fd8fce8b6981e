"""
Audit trail writes shared by the billing services.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from labbilling.core.backend_client import BackendClient, BackendError


logger = logging.getLogger(__name__)

AUDIT_TABLE = "audit_logs"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_audit_event(
    client: BackendClient,
    entity_type: str,
    entity_id: str,
    action: str,
    details: Dict[str, Any],
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> bool:
    """
    Insert one audit_logs row.

    A failed audit write is logged and reported as ``False``; it never
    fails the operation being audited.
    """
    row: Dict[str, Any] = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "details": details,
        "created_at": utc_now_iso(),
    }
    if organization_id:
        row["organization_id"] = organization_id
    if user_id:
        row["user_id"] = user_id

    try:
        client.table(AUDIT_TABLE).insert(row, returning=False).execute()
    except BackendError as exc:
        logger.warning(
            "Failed to write audit log",
            extra={"entity_type": entity_type, "entity_id": entity_id, "action": action, "error": str(exc)},
        )
        return False
    return True


__all__ = ["AUDIT_TABLE", "record_audit_event", "utc_now_iso"]
