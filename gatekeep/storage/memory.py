from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Collection, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from gatekeep.logging import get_logger
from gatekeep.storage.common import (
    ACCOUNT_COLUMNS,
    INVITATION_COLUMNS,
    RESET_TOKEN_COLUMNS,
    check_columns,
)
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import (
    Account,
    AuditChangeEntry,
    AuditEventType,
    AuditLogEntry,
    FailedLoginAttempt,
    Invitation,
    InvitationStatus,
    Lockout,
    LockoutKind,
    PasswordHistoryEntry,
    PasswordResetToken,
    Session,
)
from gatekeep.storage.repository import LockoutPlan

T = TypeVar("T")


class _MemoryRepository(Generic[T]):
    """Dict-backed table sharing the owning store's lock.

    Rows are copied on the way in and on the way out so callers can never
    mutate stored state without going through the repository.
    """

    def __init__(self, lock: threading.RLock, *, sequence: bool = False) -> None:
        self._lock = lock
        self._rows: Dict[Any, T] = {}
        self._seq: Optional[Iterator[int]] = itertools.count(1) if sequence else None

    def _copy(self, row: Optional[T]) -> Optional[T]:
        return replace(row) if row is not None else None

    def _select(self, predicate: Callable[[T], bool]) -> List[T]:
        return [replace(row) for row in self._rows.values() if predicate(row)]

    def get(self, key: Any) -> Optional[T]:
        with self._lock:
            return self._copy(self._rows.get(key))

    def add(self, item: T) -> T:
        with self._lock:
            if self._seq is not None:
                item = replace(item, id=next(self._seq))
            key = item.id
            if key in self._rows:
                raise ConstraintViolation("duplicate primary key", {"id": key})
            self._validate_insert(item)
            self._rows[key] = self._copy(item)
            return self._copy(item)

    def _validate_insert(self, item: T) -> None:
        return None

    def delete(self, key: Any) -> bool:
        with self._lock:
            return self._rows.pop(key, None) is not None


class MemoryAccountRepository(_MemoryRepository[Account]):
    def _validate_insert(self, item: Account) -> None:
        if any(existing.email == item.email for existing in self._rows.values()):
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_by_email(self, email: str) -> Optional[Account]:
        with self._lock:
            return self._copy(
                next((a for a in self._rows.values() if a.email == email), None)
            )

    def update(self, account_id: str, now: datetime, **changes: Any) -> Optional[Account]:
        check_columns(changes, ACCOUNT_COLUMNS)
        with self._lock:
            account = self._rows.get(account_id)
            if not account:
                return None
            new_email = changes.get("email")
            if new_email and any(
                a.email == new_email and a.id != account_id for a in self._rows.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(account, updated_at=now, **changes)
            self._rows[account_id] = updated
            return replace(updated)


class MemorySessionRepository(_MemoryRepository[Session]):
    def __init__(self, lock: threading.RLock, accounts: MemoryAccountRepository) -> None:
        super().__init__(lock)
        self._accounts = accounts

    def _validate_insert(self, item: Session) -> None:
        if self._accounts.get(item.account_id) is None:
            raise ConstraintViolation("account does not exist", {"account_id": item.account_id})
        if any(s.token == item.token for s in self._rows.values()):
            raise ConstraintViolation("session token collision", {"field": "token"})

    def get_by_token(self, token: str) -> Optional[Session]:
        with self._lock:
            return self._copy(next((s for s in self._rows.values() if s.token == token), None))

    def end(self, session_id: str, now: datetime) -> Optional[Session]:
        with self._lock:
            sess = self._rows.get(session_id)
            if not sess or sess.is_expired(now):
                return None
            ended = replace(sess, expires_at=now)
            self._rows[session_id] = ended
            return replace(ended)

    def list_live(self, account_id: str, now: datetime) -> List[Session]:
        with self._lock:
            live = self._select(
                lambda s: s.account_id == account_id and not s.is_expired(now)
            )
        return sorted(live, key=lambda s: s.created_at)


class MemoryLockoutRepository(_MemoryRepository[Lockout]):
    def __init__(self, lock: threading.RLock, accounts: MemoryAccountRepository) -> None:
        super().__init__(lock, sequence=True)
        self._accounts = accounts

    def _validate_insert(self, item: Lockout) -> None:
        if self._accounts.get(item.account_id) is None:
            raise ConstraintViolation("account does not exist", {"account_id": item.account_id})

    def _active_row(self, account_id: str, now: datetime) -> Optional[Lockout]:
        active = [
            row
            for row in self._rows.values()
            if row.account_id == account_id and row.is_active(now)
        ]
        return max(active, key=lambda row: row.id) if active else None

    def create_unless_active(
        self,
        account_id: str,
        now: datetime,
        plan: LockoutPlan,
        *,
        failed_attempts: int,
        reason: Optional[str],
        ip_addr: Optional[str],
    ) -> Tuple[Lockout, bool]:
        with self._lock:
            existing = self._active_row(account_id, now)
            if existing:
                return replace(existing), False
            kind, end = plan(self.list_for_account(account_id))
            lockout = self.add(
                Lockout(
                    id=0,
                    account_id=account_id,
                    start=now,
                    end=end,
                    failed_attempts=failed_attempts,
                    reason=reason,
                    ip_addr=ip_addr,
                    kind=kind,
                )
            )
            return lockout, True

    def get_active(self, account_id: str, now: datetime) -> Optional[Lockout]:
        with self._lock:
            return self._copy(self._active_row(account_id, now))

    def list_for_account(self, account_id: str) -> List[Lockout]:
        with self._lock:
            rows = self._select(lambda row: row.account_id == account_id)
        return sorted(rows, key=lambda row: row.id)

    def list_active(self, now: datetime) -> List[Lockout]:
        with self._lock:
            rows = self._select(lambda row: row.is_active(now))
        return sorted(rows, key=lambda row: row.id)

    def _guarded_update(
        self, lockout_id: int, now: datetime, guard: Callable[[Lockout], bool], **changes: Any
    ) -> Optional[Lockout]:
        with self._lock:
            row = self._rows.get(lockout_id)
            if not row or not row.is_active(now) or not guard(row):
                return None
            updated = replace(row, **changes)
            self._rows[lockout_id] = updated
            return replace(updated)

    def lift(
        self, lockout_id: int, now: datetime, lifted_by: Optional[str]
    ) -> Optional[Lockout]:
        return self._guarded_update(
            lockout_id, now, lambda row: True, end=now, lifted_at=now, lifted_by=lifted_by
        )

    def extend(self, lockout_id: int, now: datetime, minutes: int) -> Optional[Lockout]:
        with self._lock:
            row = self._rows.get(lockout_id)
            if not row or row.end is None:
                return None
            return self._guarded_update(
                lockout_id,
                now,
                lambda r: r.kind == LockoutKind.TEMPORARY,
                end=row.end + timedelta(minutes=minutes),
            )

    def make_permanent(self, lockout_id: int, now: datetime) -> Optional[Lockout]:
        return self._guarded_update(
            lockout_id, now, lambda row: True, end=None, kind=LockoutKind.PERMANENT
        )

    def delete_ended_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                key
                for key, row in self._rows.items()
                if row.end is not None and row.end < cutoff
            ]
            for key in stale:
                self._rows.pop(key, None)
            return len(stale)


class MemoryFailedLoginRepository(_MemoryRepository[FailedLoginAttempt]):
    def __init__(self, lock: threading.RLock) -> None:
        super().__init__(lock, sequence=True)

    def _copy(self, row):
        return replace(row, metadata=dict(row.metadata)) if row is not None else None

    def _since(self, predicate: Callable[[FailedLoginAttempt], bool], since: datetime):
        with self._lock:
            rows = [
                self._copy(row)
                for row in self._rows.values()
                if row.attempted_at >= since and predicate(row)
            ]
        return sorted(rows, key=lambda row: (row.attempted_at, row.id), reverse=True)

    def count_by_email(self, email: str, since: datetime) -> int:
        return len(self._since(lambda row: row.email == email, since))

    def count_by_ip(self, ip_addr: str, since: datetime) -> int:
        return len(self._since(lambda row: row.ip_addr == ip_addr, since))

    def list_by_email(self, email: str, since: datetime) -> List[FailedLoginAttempt]:
        return self._since(lambda row: row.email == email, since)

    def list_by_ip(self, ip_addr: str, since: datetime) -> List[FailedLoginAttempt]:
        return self._since(lambda row: row.ip_addr == ip_addr, since)

    def delete_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [key for key, row in self._rows.items() if row.attempted_at < cutoff]
            for key in stale:
                self._rows.pop(key, None)
            return len(stale)


class _MemoryTokenRepository(_MemoryRepository[T]):
    columns: Collection[str] = ()

    def get_by_token(self, token: str) -> Optional[T]:
        with self._lock:
            return self._copy(next((r for r in self._rows.values() if r.token == token), None))

    def _validate_insert(self, item: T) -> None:
        if any(r.token == item.token for r in self._rows.values()):
            raise ConstraintViolation("token collision", {"field": "token"})

    def list_for_account(self, account_id: str) -> List[T]:
        with self._lock:
            rows = self._select(lambda r: r.account_id == account_id)
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    def transition(
        self,
        token_id: str,
        expected: Collection[Any],
        new_status: Any,
        *,
        unexpired_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[T]:
        check_columns(changes, self.columns)
        with self._lock:
            row = self._rows.get(token_id)
            if not row or row.status not in expected:
                return None
            if unexpired_at is not None and row.is_expired(unexpired_at):
                return None
            updated = replace(row, status=new_status, **changes)
            self._rows[token_id] = updated
            return replace(updated)


class MemoryInvitationRepository(_MemoryTokenRepository[Invitation]):
    columns = INVITATION_COLUMNS

    def list_by_status(self, status: InvitationStatus) -> List[Invitation]:
        with self._lock:
            rows = self._select(lambda r: r.status == status)
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    def expire_overdue(self, now: datetime) -> int:
        expired = 0
        with self._lock:
            for key, row in list(self._rows.items()):
                if row.status in (InvitationStatus.PENDING, InvitationStatus.SENT) and row.is_expired(now):
                    self._rows[key] = replace(row, status=InvitationStatus.EXPIRED)
                    expired += 1
        return expired


class MemoryResetTokenRepository(_MemoryTokenRepository[PasswordResetToken]):
    columns = RESET_TOKEN_COLUMNS


class MemoryPasswordHistoryRepository(_MemoryRepository[PasswordHistoryEntry]):
    def __init__(self, lock: threading.RLock) -> None:
        super().__init__(lock, sequence=True)

    def recent(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._select(lambda r: r.account_id == account_id)
        return sorted(rows, key=lambda r: (r.created_at, r.id), reverse=True)[:limit]


class MemoryAuditLogRepository(_MemoryRepository[AuditLogEntry]):
    def __init__(self, lock: threading.RLock) -> None:
        super().__init__(lock, sequence=True)

    def _query(self, predicate: Callable[[AuditLogEntry], bool], limit: Optional[int] = None):
        with self._lock:
            rows = self._select(predicate)
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return rows[:limit] if limit is not None else rows

    def list_for_account(self, account_id: str, limit: int = 100) -> List[AuditLogEntry]:
        return self._query(lambda r: r.account_id == account_id, limit)

    def list_by_event_type(
        self, event_type: AuditEventType, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self._query(lambda r: r.event_type == event_type, limit)

    def list_between(
        self, start: datetime, end: datetime, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self._query(lambda r: start <= r.created_at <= end, limit)

    def list_for_record(self, table_name: str, record_id: str) -> List[AuditLogEntry]:
        return self._query(lambda r: r.table_name == table_name and r.record_id == record_id)

    def list_by_group(self, group_id: str) -> List[AuditLogEntry]:
        return self._query(lambda r: r.group_id == group_id)


class MemoryAuditChangeRepository(_MemoryRepository[AuditChangeEntry]):
    def __init__(self, lock: threading.RLock, logs: MemoryAuditLogRepository) -> None:
        super().__init__(lock, sequence=True)
        self._logs = logs

    def _validate_insert(self, item: AuditChangeEntry) -> None:
        if self._logs.get(item.audit_log_id) is None:
            raise ConstraintViolation("audit log does not exist", {"audit_log_id": item.audit_log_id})

    def list_for_log(self, audit_log_id: int) -> List[AuditChangeEntry]:
        with self._lock:
            rows = self._select(lambda r: r.audit_log_id == audit_log_id)
        return sorted(rows, key=lambda r: r.id)


class MemoryStore:
    """In-process store for tests and single-node development.

    One re-entrant lock guards every table, so each repository call (and
    each compare-and-set inside it) is atomic with respect to the others.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        # RLock so a repository can call a sibling while holding it
        self._data_lock = threading.RLock()
        self.accounts = MemoryAccountRepository(self._data_lock)
        self.sessions = MemorySessionRepository(self._data_lock, self.accounts)
        self.lockouts = MemoryLockoutRepository(self._data_lock, self.accounts)
        self.failed_logins = MemoryFailedLoginRepository(self._data_lock)
        self.invitations = MemoryInvitationRepository(self._data_lock)
        self.reset_tokens = MemoryResetTokenRepository(self._data_lock)
        self.password_history = MemoryPasswordHistoryRepository(self._data_lock)
        self.audit_logs = MemoryAuditLogRepository(self._data_lock)
        self.audit_changes = MemoryAuditChangeRepository(self._data_lock, self.audit_logs)
        self.logger.info("memory_store_ready")
