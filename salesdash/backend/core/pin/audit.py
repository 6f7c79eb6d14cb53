"""
Append-only audit log for PIN events.
`append` completes before the gate returns, so every decision is on record first.
"""

import json
import logging
import platform
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from supabase import Client

from .config import SupabaseConfig
from .exceptions import StorageError
from .models import AuditAction, AuditContext, PINAuditLog

logger = logging.getLogger(__name__)

MAX_METADATA_VALUE_LEN = 256


def _server_identity() -> str:
    """Best-effort identifier of the node that made the decision."""
    host = platform.node() or "unknown-host"
    sysname = platform.system() or "unknown-os"
    return f"{sysname}:{host}"


def build_audit_metadata(**extra: Any) -> Dict[str, Any]:
    """
    Build JSON-serializable metadata for an audit entry.
    None values are dropped; oversized values are truncated.
    """
    metadata: Dict[str, Any] = {"server": _server_identity()}
    for key, value in extra.items():
        if value is None:
            continue
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        elif not isinstance(value, (bool, int, float, str)):
            value = json.dumps(value, default=str, separators=(",", ":"))
        if isinstance(value, str) and len(value) > MAX_METADATA_VALUE_LEN:
            value = value[: MAX_METADATA_VALUE_LEN - 3] + "..."
        metadata[str(key)] = value
    return metadata


def build_entry(
    user_id: str,
    action: AuditAction,
    success: bool,
    context: Optional[AuditContext] = None,
    **extra: Any,
) -> PINAuditLog:
    """Assemble an audit entry from the call outcome and client context."""
    context = context or AuditContext()
    return PINAuditLog(
        user_id=user_id,
        action=action,
        success=success,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata=build_audit_metadata(**extra),
    )


class AuditLogSink(ABC):
    """Durable, write-once sink for PINAuditLog entries."""

    @abstractmethod
    async def append(self, entry: PINAuditLog) -> None:
        """Persist an entry; return only once it is durable."""


class InMemoryAuditLogSink(AuditLogSink):
    """List-backed sink."""

    def __init__(self):
        self.entries: List[PINAuditLog] = []

    async def append(self, entry: PINAuditLog) -> None:
        self.entries.append(entry.copy(deep=True))

    def entries_for(self, user_id: str) -> List[PINAuditLog]:
        return [e for e in self.entries if e.user_id == user_id]


class SupabaseAuditLogSink(AuditLogSink):
    """Sink backed by the Supabase `pin_audit_logs` table."""

    def __init__(self, supabase: Client, table: Optional[str] = None):
        self.supabase = supabase
        self.table = table or SupabaseConfig.AUDIT_TABLE

    async def append(self, entry: PINAuditLog) -> None:
        audit_dict = entry.dict()
        audit_dict["action"] = entry.action.value
        # Convert datetime to ISO string
        audit_dict["created_at"] = entry.created_at.isoformat()

        try:
            self.supabase.table(self.table).insert(audit_dict).execute()
        except Exception as e:
            logger.error(f"Failed to write PIN audit entry for user {entry.user_id}: {e}")
            raise StorageError("Audit log unavailable", user_id=entry.user_id) from e
