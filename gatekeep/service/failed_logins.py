from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.credentials import normalize_email
from gatekeep.storage.models import Account, FailedLoginAttempt
from gatekeep.storage.repository import Store


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailedLoginTracker:
    """Stores failed login attempts and counts them over rolling windows.

    The tracker only records and counts. Deciding whether to lock an account
    and writing the audit entry are the orchestrator's job.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = get_logger(__name__)
        self._clock = clock or _utcnow

    def _since(self, window_minutes: Optional[int]) -> datetime:
        if window_minutes is None:
            window_minutes = self.settings.lockout_window_minutes
        return self._clock() - timedelta(minutes=window_minutes)

    def _resolve_account_id(self, email: str) -> Optional[str]:
        if not email:
            return None
        try:
            account = self.store.accounts.get_by_email(email)
        except Exception as exc:
            # attribution is best effort; the attempt is still recorded
            self.logger.warning(
                "failed_login_account_lookup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return account.id if account else None

    def record(
        self,
        email: Optional[str],
        ip: Optional[str],
        reason: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        *,
        account: Optional[Account] = None,
    ) -> FailedLoginAttempt:
        normalized = normalize_email(email) or None
        account_id = account.id if account else self._resolve_account_id(normalized or "")
        attempt = self.store.failed_logins.add(
            FailedLoginAttempt(
                id=0,
                ip_addr=ip,
                attempted_at=self._clock(),
                email=normalized,
                account_id=account_id,
                reason=reason,
                metadata=dict(metadata or {}),
            )
        )
        self.logger.info(
            "failed_login_recorded",
            attempt_id=attempt.id,
            account_id=account_id,
            ip=ip,
            reason=reason,
        )
        return attempt

    def count_by_email(self, email: str, window_minutes: Optional[int] = None) -> int:
        return self.store.failed_logins.count_by_email(
            normalize_email(email), self._since(window_minutes)
        )

    def count_by_ip(self, ip: str, window_minutes: Optional[int] = None) -> int:
        return self.store.failed_logins.count_by_ip(ip, self._since(window_minutes))

    def recent_by_email(
        self, email: str, window_minutes: Optional[int] = None
    ) -> List[FailedLoginAttempt]:
        return self.store.failed_logins.list_by_email(
            normalize_email(email), self._since(window_minutes)
        )

    def recent_by_ip(
        self, ip: str, window_minutes: Optional[int] = None
    ) -> List[FailedLoginAttempt]:
        return self.store.failed_logins.list_by_ip(ip, self._since(window_minutes))

    def threshold_exceeded(self, email: str) -> bool:
        return self.count_by_email(email) >= self.settings.lockout_max_attempts

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        days = older_than_days
        if days is None:
            days = self.settings.failed_login_retention_days
        removed = self.store.failed_logins.delete_before(self._clock() - timedelta(days=days))
        self.logger.info("failed_logins_purged", removed=removed, older_than_days=days)
        return removed
