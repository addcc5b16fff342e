from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditTrail
from gatekeep.service.errors import NotFoundError
from gatekeep.storage.models import AuditEventType, Session
from gatekeep.storage.repository import Store

SESSION_TABLE = "auth_session"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Creates, validates and ends login sessions.

    A session is usable only while it is unexpired, its account is ACTIVE and
    the account has no active lockout. Callers get the same negative answer
    whichever of those fails; the specific reason goes to the log.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        audit: AuditTrail,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.logger = get_logger(__name__)
        self._clock = clock or _utcnow

    def create(
        self,
        account_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        if self.store.accounts.get(account_id) is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        session = self.store.sessions.add(
            Session.new(
                account_id,
                self._clock(),
                self.settings.session_ttl_minutes,
                ip_addr=ip,
                user_agent=user_agent,
            )
        )
        self.audit.append(
            AuditEventType.SESSION_STARTED,
            account_id=account_id,
            description="session started",
            ip=ip,
            table_name=SESSION_TABLE,
            record_id=session.id,
            signed_by=account_id,
        )
        self.logger.info("session_created", account_id=account_id, session_id=session.id)
        return session

    def _reject(self, session: Optional[Session], reason: str, *, audit: bool = False) -> None:
        self.logger.info(
            "session_rejected",
            reason=reason,
            session_id=session.id if session else None,
            account_id=session.account_id if session else None,
        )
        if audit and session:
            self.audit.append(
                AuditEventType.SESSION_REJECTED,
                account_id=session.account_id,
                description=f"session rejected: {reason}",
                ip=session.ip_addr,
                table_name=SESSION_TABLE,
                record_id=session.id,
                reason=reason,
            )

    def resolve(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        session = self.store.sessions.get_by_token(token)
        if not session:
            self._reject(None, "unknown")
            return None
        now = self._clock()
        if session.is_expired(now):
            self._reject(session, "expired")
            return None
        account = self.store.accounts.get(session.account_id)
        if not account:
            self._reject(session, "account_missing")
            return None
        if not account.is_active:
            self._reject(session, f"account_{account.status.value}", audit=True)
            return None
        # read lockouts from the store so sessions don't depend on LockoutManager
        if self.store.lockouts.get_active(account.id, now):
            self._reject(session, "account_locked", audit=True)
            return None
        return session

    def validate(self, token: Optional[str]) -> bool:
        return self.resolve(token) is not None

    def _end(self, session: Session, reason: Optional[str], actor_id: Optional[str]) -> bool:
        ended = self.store.sessions.end(session.id, self._clock())
        if not ended:
            return False
        self.audit.append(
            AuditEventType.SESSION_ENDED,
            account_id=session.account_id,
            description="session ended",
            ip=session.ip_addr,
            table_name=SESSION_TABLE,
            record_id=session.id,
            signed_by=actor_id or session.account_id,
            reason=reason,
        )
        self.logger.info(
            "session_ended", account_id=session.account_id, session_id=session.id, reason=reason
        )
        return True

    def end(self, token: Optional[str], reason: Optional[str] = None) -> bool:
        """End the session behind ``token``; True only for the call that ended it."""
        if not token:
            return False
        session = self.store.sessions.get_by_token(token)
        if not session:
            return False
        return self._end(session, reason, None)

    def end_all(
        self, account_id: str, reason: Optional[str] = None, *, actor_id: Optional[str] = None
    ) -> int:
        ended = 0
        for session in self.store.sessions.list_live(account_id, self._clock()):
            if self._end(session, reason, actor_id):
                ended += 1
        if ended:
            self.logger.info("sessions_ended", account_id=account_id, count=ended, reason=reason)
        return ended

    def list_active(self, account_id: str) -> List[Session]:
        return self.store.sessions.list_live(account_id, self._clock())
