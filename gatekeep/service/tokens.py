from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditTrail
from gatekeep.service.email import Notifier, redact_address
from gatekeep.storage.models import new_token
from gatekeep.storage.repository import Store

R = TypeVar("R")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer(Generic[R]):
    """Shared lifecycle of single-use, expiring tokens.

    Subclasses name the repository, the status a token must be in to be
    consumed, the statuses that may still expire and the terminal EXPIRED
    status. Every status change goes through the repository's
    compare-and-set ``transition`` so racing callers get one winner.
    """

    table: str = ""
    consumable_status: Any = None
    live_statuses: Tuple[Any, ...] = ()
    expired_status: Any = None

    def __init__(
        self,
        store: Store,
        settings: Settings,
        audit: AuditTrail,
        notifier: Notifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.notifier = notifier
        self.logger = get_logger(self.__class__.__module__)
        self._clock = clock or _utcnow

    @property
    def repo(self):
        raise NotImplementedError

    @staticmethod
    def generate() -> str:
        return new_token()

    def _lookup(self, token: Optional[str]) -> Optional[R]:
        if not token:
            return None
        return self.repo.get_by_token(token)

    def _expire_if_due(self, record: R) -> bool:
        """Flip an overdue live token to EXPIRED; True when it is overdue."""
        if record.status not in self.live_statuses or not record.is_expired(self._clock()):
            return False
        # losing this race to another caller is fine, the token is expired either way
        if self.repo.transition(record.id, self.live_statuses, self.expired_status):
            self.logger.info("token_expired", table=self.table, record_id=record.id)
        return True

    def _usable(self, record: Optional[R]) -> Optional[R]:
        if record is None:
            return None
        if self._expire_if_due(record):
            return None
        if record.status != self.consumable_status:
            return None
        return record

    def _consume(self, record: R, new_status: Any, **changes: Any) -> Optional[R]:
        return self.repo.transition(
            record.id,
            (self.consumable_status,),
            new_status,
            unexpired_at=self._clock(),
            **changes,
        )

    def _deliver(self, to: str, message: Tuple[str, str, str]) -> bool:
        subject, body, html_body = message
        try:
            delivered = self.notifier.send(to, subject, body, html_body)
        except Exception as exc:
            self.logger.error(
                "token_delivery_failed",
                table=self.table,
                to=redact_address(to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            self.logger.warning("token_delivery_failed", table=self.table, to=redact_address(to))
        return bool(delivered)
