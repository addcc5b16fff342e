from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditTrail
from gatekeep.service.credentials import normalize_email
from gatekeep.service.errors import NotFoundError, ValidationError
from gatekeep.service.sessions import SessionManager
from gatekeep.storage.models import AuditEventType, Lockout, LockoutKind
from gatekeep.storage.repository import LockoutPlan, Store

LOCKOUT_TABLE = "account_lockout"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def temporary_since_last_permanent(history: Sequence[Lockout]) -> int:
    """Count TEMPORARY lockouts after the most recent PERMANENT one.

    ``history`` is ordered oldest first.
    """
    count = 0
    for lockout in reversed(history):
        if lockout.kind == LockoutKind.PERMANENT:
            break
        count += 1
    return count


def escalates(prior_temporary: int, threshold: int) -> bool:
    """The Nth consecutive lockout is permanent; a threshold of 0 never escalates."""
    return threshold > 0 and prior_temporary >= threshold - 1


class LockoutManager:
    """Temporary and permanent account lockouts with escalation.

    Locking ends every session of the account. Each transition writes one
    audit entry under the locked account, plus one under the admin who
    initiated it when that is someone else.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        audit: AuditTrail,
        sessions: SessionManager,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.sessions = sessions
        self.logger = get_logger(__name__)
        self._clock = clock or _utcnow

    def _plan(self, now: datetime) -> LockoutPlan:
        def plan(history: List[Lockout]) -> Tuple[LockoutKind, Optional[datetime]]:
            prior = temporary_since_last_permanent(history)
            if escalates(prior, self.settings.lockout_permanent_threshold):
                return LockoutKind.PERMANENT, None
            return LockoutKind.TEMPORARY, now + timedelta(
                minutes=self.settings.lockout_duration_minutes
            )

        return plan

    def _account_id_for(self, email: str) -> Optional[str]:
        account = self.store.accounts.get_by_email(normalize_email(email))
        return account.id if account else None

    # creation
    def lock(
        self,
        account_id: str,
        failed_attempts: int = 0,
        reason: Optional[str] = None,
        ip: Optional[str] = None,
        *,
        admin_id: Optional[str] = None,
    ) -> Lockout:
        if self.store.accounts.get(account_id) is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        now = self._clock()
        lockout, created = self.store.lockouts.create_unless_active(
            account_id,
            now,
            self._plan(now),
            failed_attempts=failed_attempts,
            reason=reason,
            ip_addr=ip,
        )
        if not created:
            self.logger.info("lockout_already_active", account_id=account_id, lockout_id=lockout.id)
            return lockout

        ended = self.sessions.end_all(account_id, "account_locked", actor_id=admin_id)
        event = (
            AuditEventType.LOCKOUT_ESCALATED
            if lockout.is_permanent
            else AuditEventType.ACCOUNT_LOCKED
        )
        until = "permanently" if lockout.is_permanent else f"until {lockout.end.isoformat()}"
        self.audit.record_transition(
            event,
            account_id=account_id,
            actor_id=admin_id,
            description=f"account locked {until} after {failed_attempts} failed attempts",
            ip=ip,
            table_name=LOCKOUT_TABLE,
            record_id=lockout.id,
            reason=reason,
        )
        self.logger.warning(
            "account_locked",
            account_id=account_id,
            lockout_id=lockout.id,
            kind=lockout.kind.value,
            sessions_ended=ended,
        )
        return lockout

    def lock_by_email(
        self,
        email: str,
        failed_attempts: int = 0,
        reason: Optional[str] = None,
        ip: Optional[str] = None,
        *,
        admin_id: Optional[str] = None,
    ) -> Optional[Lockout]:
        account_id = self._account_id_for(email)
        if not account_id:
            return None
        return self.lock(account_id, failed_attempts, reason, ip, admin_id=admin_id)

    # queries
    def get_active_lockout(self, account_id: str) -> Optional[Lockout]:
        return self.store.lockouts.get_active(account_id, self._clock())

    def is_locked(self, account_id: str) -> bool:
        return self.get_active_lockout(account_id) is not None

    def is_locked_by_email(self, email: str) -> bool:
        account_id = self._account_id_for(email)
        return bool(account_id) and self.is_locked(account_id)

    def history(self, account_id: str) -> List[Lockout]:
        """All lockouts of an account, newest first."""
        return list(reversed(self.store.lockouts.list_for_account(account_id)))

    def history_by_email(self, email: str) -> List[Lockout]:
        account_id = self._account_id_for(email)
        return self.history(account_id) if account_id else []

    def list_active(self) -> List[Lockout]:
        return self.store.lockouts.list_active(self._clock())

    def list_permanent(self) -> List[Lockout]:
        return [lockout for lockout in self.list_active() if lockout.is_permanent]

    def list_temporary(self) -> List[Lockout]:
        return [lockout for lockout in self.list_active() if not lockout.is_permanent]

    def temporary_lockout_count(self, account_id: str) -> int:
        """Temporary lockouts since the account's last permanent one."""
        return temporary_since_last_permanent(self.store.lockouts.list_for_account(account_id))

    def should_be_permanent(self, account_id: str) -> bool:
        return escalates(
            self.temporary_lockout_count(account_id),
            self.settings.lockout_permanent_threshold,
        )

    # transitions
    def unlock(
        self,
        account_id: str,
        reason: Optional[str] = None,
        admin_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> bool:
        now = self._clock()
        active = self.store.lockouts.get_active(account_id, now)
        if not active:
            return False
        lifted = self.store.lockouts.lift(active.id, now, admin_id)
        if not lifted:
            return False
        self.audit.record_transition(
            AuditEventType.ACCOUNT_UNLOCKED,
            account_id=account_id,
            actor_id=admin_id,
            description="account unlocked",
            ip=ip,
            table_name=LOCKOUT_TABLE,
            record_id=lifted.id,
            reason=reason,
        )
        self.logger.info("account_unlocked", account_id=account_id, lockout_id=lifted.id, admin_id=admin_id)
        return True

    def unlock_by_email(
        self,
        email: str,
        reason: Optional[str] = None,
        admin_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> bool:
        account_id = self._account_id_for(email)
        if not account_id:
            return False
        return self.unlock(account_id, reason, admin_id, ip)

    def extend(
        self,
        account_id: str,
        minutes: int,
        reason: Optional[str] = None,
        admin_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> bool:
        if minutes <= 0:
            raise ValidationError("minutes must be positive", detail={"minutes": minutes})
        now = self._clock()
        active = self.store.lockouts.get_active(account_id, now)
        if not active or active.is_permanent:
            return False
        extended = self.store.lockouts.extend(active.id, now, minutes)
        if not extended:
            return False
        self.audit.record_transition(
            AuditEventType.LOCKOUT_EXTENDED,
            account_id=account_id,
            actor_id=admin_id,
            description=f"lockout extended by {minutes} minutes until {extended.end.isoformat()}",
            ip=ip,
            table_name=LOCKOUT_TABLE,
            record_id=extended.id,
            reason=reason,
        )
        self.logger.info("lockout_extended", account_id=account_id, lockout_id=extended.id, minutes=minutes)
        return True

    def make_permanent(
        self,
        account_id: str,
        reason: Optional[str] = None,
        admin_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> bool:
        now = self._clock()
        active = self.store.lockouts.get_active(account_id, now)
        if not active:
            return False
        if active.is_permanent:
            return True
        updated = self.store.lockouts.make_permanent(active.id, now)
        if not updated:
            return False
        self.audit.record_transition(
            AuditEventType.LOCKOUT_ESCALATED,
            account_id=account_id,
            actor_id=admin_id,
            description="lockout made permanent",
            ip=ip,
            table_name=LOCKOUT_TABLE,
            record_id=updated.id,
            reason=reason,
        )
        self.logger.warning("lockout_made_permanent", account_id=account_id, lockout_id=updated.id)
        return True

    def cleanup_expired(self, older_than_days: int) -> int:
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = self.store.lockouts.delete_ended_before(cutoff)
        self.logger.info("lockouts_purged", removed=removed, older_than_days=older_than_days)
        return removed
