"""Persistence contracts shared by the memory and Postgres stores.

Every entity gets one repository. Lookups return ``None`` when a row is
absent; backend failures surface as :class:`PersistenceError`. Methods that
change state conditionally (``end``, ``lift``, ``transition`` ...) return the
updated row, or ``None`` when the guard did not match, so concurrent callers
see exactly one winner.
"""

from __future__ import annotations

from datetime import datetime
from typing import (
    Any,
    Callable,
    Collection,
    List,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
)

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
    ResetTokenStatus,
    Session,
)

T = TypeVar("T")
K = TypeVar("K", contravariant=True)

# Given an account's lockout history (oldest first), decide the kind and end
# of the lockout about to be created.
LockoutPlan = Callable[[List[Lockout]], Tuple[LockoutKind, Optional[datetime]]]


class Repository(Protocol[T, K]):
    def get(self, key: K) -> Optional[T]:
        ...

    def add(self, item: T) -> T:
        """Persist ``item``. Integer-keyed entities get their id assigned here."""
        ...

    def delete(self, key: K) -> bool:
        ...


class AccountRepository(Repository[Account, str], Protocol):
    def get_by_email(self, email: str) -> Optional[Account]:
        ...

    def update(self, account_id: str, now: datetime, **changes: Any) -> Optional[Account]:
        ...


class SessionRepository(Repository[Session, str], Protocol):
    def get_by_token(self, token: str) -> Optional[Session]:
        ...

    def end(self, session_id: str, now: datetime) -> Optional[Session]:
        """Set ``expires_at = now`` only while the session is still live."""
        ...

    def list_live(self, account_id: str, now: datetime) -> List[Session]:
        ...


class LockoutRepository(Repository[Lockout, int], Protocol):
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
        """Create a lockout unless one is already active.

        Returns ``(lockout, created)``. The active check, the history read and
        the insert happen under one guard per account.
        """
        ...

    def get_active(self, account_id: str, now: datetime) -> Optional[Lockout]:
        ...

    def list_for_account(self, account_id: str) -> List[Lockout]:
        ...

    def list_active(self, now: datetime) -> List[Lockout]:
        ...

    def lift(
        self, lockout_id: int, now: datetime, lifted_by: Optional[str]
    ) -> Optional[Lockout]:
        ...

    def extend(self, lockout_id: int, now: datetime, minutes: int) -> Optional[Lockout]:
        """Push a live temporary lockout's end out by ``minutes``."""
        ...

    def make_permanent(self, lockout_id: int, now: datetime) -> Optional[Lockout]:
        ...

    def delete_ended_before(self, cutoff: datetime) -> int:
        ...


class FailedLoginRepository(Repository[FailedLoginAttempt, int], Protocol):
    def count_by_email(self, email: str, since: datetime) -> int:
        ...

    def count_by_ip(self, ip_addr: str, since: datetime) -> int:
        ...

    def list_by_email(self, email: str, since: datetime) -> List[FailedLoginAttempt]:
        ...

    def list_by_ip(self, ip_addr: str, since: datetime) -> List[FailedLoginAttempt]:
        ...

    def delete_before(self, cutoff: datetime) -> int:
        ...


class InvitationRepository(Repository[Invitation, str], Protocol):
    def get_by_token(self, token: str) -> Optional[Invitation]:
        ...

    def list_for_account(self, account_id: str) -> List[Invitation]:
        ...

    def list_by_status(self, status: InvitationStatus) -> List[Invitation]:
        ...

    def transition(
        self,
        invitation_id: str,
        expected: Collection[InvitationStatus],
        new_status: InvitationStatus,
        *,
        unexpired_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[Invitation]:
        ...

    def expire_overdue(self, now: datetime) -> int:
        ...


class ResetTokenRepository(Repository[PasswordResetToken, str], Protocol):
    def get_by_token(self, token: str) -> Optional[PasswordResetToken]:
        ...

    def list_for_account(self, account_id: str) -> List[PasswordResetToken]:
        ...

    def transition(
        self,
        token_id: str,
        expected: Collection[ResetTokenStatus],
        new_status: ResetTokenStatus,
        *,
        unexpired_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[PasswordResetToken]:
        ...


class PasswordHistoryRepository(Repository[PasswordHistoryEntry, int], Protocol):
    def recent(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]:
        """Newest first."""
        ...


class AuditLogRepository(Repository[AuditLogEntry, int], Protocol):
    def list_for_account(self, account_id: str, limit: int = 100) -> List[AuditLogEntry]:
        ...

    def list_by_event_type(
        self, event_type: AuditEventType, limit: int = 100
    ) -> List[AuditLogEntry]:
        ...

    def list_between(
        self, start: datetime, end: datetime, limit: int = 100
    ) -> List[AuditLogEntry]:
        ...

    def list_for_record(self, table_name: str, record_id: str) -> List[AuditLogEntry]:
        ...

    def list_by_group(self, group_id: str) -> List[AuditLogEntry]:
        ...


class AuditChangeRepository(Repository[AuditChangeEntry, int], Protocol):
    def list_for_log(self, audit_log_id: int) -> List[AuditChangeEntry]:
        ...


class Store(Protocol):
    accounts: AccountRepository
    sessions: SessionRepository
    lockouts: LockoutRepository
    failed_logins: FailedLoginRepository
    invitations: InvitationRepository
    reset_tokens: ResetTokenRepository
    password_history: PasswordHistoryRepository
    audit_logs: AuditLogRepository
    audit_changes: AuditChangeRepository
