from __future__ import annotations

import base64
import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional

from gatekeep.config import Settings
from gatekeep.logging import get_correlation_id, get_logger
from gatekeep.storage.models import AuditChangeEntry, AuditEventType, AuditLogEntry
from gatekeep.storage.repository import Store

FIELD_SEPARATOR = "\x1f"
NULL_MARKER = "null"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


class AuditTrail:
    """Append-only, signed record of security-relevant events.

    Every entry is signed over a fixed, ordered set of its fields before it
    is stored; :meth:`verify` recomputes the signature from whatever the
    fields hold now, so an edit made after signing is detectable.

    Writes never fail the caller: a storage error is logged as
    ``audit_write_failed`` and reported as ``None``.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.logger = get_logger(__name__)
        self._clock = clock or _utcnow
        key = settings.audit_signing_key
        self._key = key.encode("utf-8") if key else None

    # signing
    def _payload(self, entry: AuditLogEntry) -> bytes:
        values = [
            entry.account_id,
            entry.event_type,
            entry.description,
            entry.ip_addr,
            entry.signed_by,
            entry.reason,
            entry.table_name,
            entry.record_id,
            entry.group_id,
            entry.created_at,
        ]
        parts = [_stringify(v) for v in values]
        joined = FIELD_SEPARATOR.join(NULL_MARKER if p is None else p for p in parts)
        return joined.encode("utf-8")

    def sign(self, entry: AuditLogEntry) -> str:
        payload = self._payload(entry)
        if self._key:
            digest = hmac.new(self._key, payload, hashlib.sha256).digest()
        else:
            digest = hashlib.sha256(payload).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify(self, entry: AuditLogEntry) -> bool:
        if not entry.signature:
            return False
        return hmac.compare_digest(self.sign(entry), entry.signature)

    # writes
    def append(
        self,
        event_type: AuditEventType,
        *,
        account_id: Optional[str] = None,
        description: Optional[str] = None,
        ip: Optional[str] = None,
        table_name: Optional[str] = None,
        record_id: Optional[Any] = None,
        signed_by: Optional[str] = None,
        reason: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            id=0,
            event_type=AuditEventType(event_type),
            created_at=self._clock(),
            account_id=account_id,
            description=description,
            ip_addr=ip,
            table_name=table_name,
            record_id=_stringify(record_id),
            signed_by=signed_by,
            reason=reason,
            group_id=group_id or get_correlation_id(),
        )
        entry.signature = self.sign(entry)
        try:
            stored = self.store.audit_logs.add(entry)
        except Exception as exc:
            self.logger.error(
                "audit_write_failed",
                event_type=entry.event_type.value,
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        self.logger.debug("audit_appended", audit_id=stored.id, event_type=stored.event_type.value)
        return stored

    def record_transition(
        self,
        event_type: AuditEventType,
        *,
        account_id: str,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        ip: Optional[str] = None,
        table_name: Optional[str] = None,
        record_id: Optional[Any] = None,
        reason: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """Audit a state change on ``account_id``.

        When another account (an admin) initiated it, a second entry is
        written under that account; both share one ``group_id``.
        """
        by_other = actor_id is not None and actor_id != account_id
        group_id = get_correlation_id() or (str(uuid.uuid4()) if by_other else None)
        primary = self.append(
            event_type,
            account_id=account_id,
            description=description,
            ip=ip,
            table_name=table_name,
            record_id=record_id,
            signed_by=actor_id or account_id,
            reason=reason,
            group_id=group_id,
        )
        if by_other:
            self.append(
                event_type,
                account_id=actor_id,
                description=f"{description or event_type.value} (account {account_id})",
                ip=ip,
                table_name=table_name,
                record_id=record_id,
                signed_by=actor_id,
                reason=reason,
                group_id=group_id,
            )
        return primary

    def record_change(
        self, log_id: int, column: str, old: Any, new: Any
    ) -> Optional[AuditChangeEntry]:
        change = AuditChangeEntry(
            id=0,
            audit_log_id=log_id,
            column_name=column,
            old_value=_stringify(old),
            new_value=_stringify(new),
        )
        try:
            return self.store.audit_changes.add(change)
        except Exception as exc:
            self.logger.error(
                "audit_write_failed",
                audit_log_id=log_id,
                column=column,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def record_changes(
        self, log_id: int, before: Mapping[str, Any], after: Mapping[str, Any]
    ) -> List[AuditChangeEntry]:
        """One change row per key whose value differs between the two maps."""
        written: List[AuditChangeEntry] = []
        for column in sorted(set(before) | set(after)):
            old, new = before.get(column), after.get(column)
            if _stringify(old) == _stringify(new):
                continue
            change = self.record_change(log_id, column, old, new)
            if change:
                written.append(change)
        return written

    # reads
    def get(self, log_id: int) -> Optional[AuditLogEntry]:
        return self.store.audit_logs.get(log_id)

    def for_account(self, account_id: str, limit: int = 100) -> List[AuditLogEntry]:
        return self.store.audit_logs.list_for_account(account_id, limit)

    def by_event_type(
        self, event_type: AuditEventType, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self.store.audit_logs.list_by_event_type(event_type, limit)

    def by_date_range(
        self, start: datetime, end: datetime, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self.store.audit_logs.list_between(start, end, limit)

    def for_record(self, table_name: str, record_id: Any) -> List[AuditLogEntry]:
        return self.store.audit_logs.list_for_record(table_name, _stringify(record_id))

    def by_group(self, group_id: str) -> List[AuditLogEntry]:
        return self.store.audit_logs.list_by_group(group_id)

    def changes_for(self, log_id: int) -> List[AuditChangeEntry]:
        return self.store.audit_changes.list_for_log(log_id)
