from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditTrail
from gatekeep.service.auth import AuthService
from gatekeep.service.credentials import PasswordHasher, PasswordPolicy
from gatekeep.service.email import EmailService, Notifier
from gatekeep.service.failed_logins import FailedLoginTracker
from gatekeep.service.invitations import InvitationService
from gatekeep.service.lockout import LockoutManager
from gatekeep.service.password_reset import PasswordResetService
from gatekeep.service.registration import RegistrationService
from gatekeep.service.sessions import SessionManager
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.postgres import PostgresStore
from gatekeep.storage.repository import Store

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: postgresql://app:secret@db:5432/gatekeep -> postgresql://app:***@db:5432/gatekeep
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds and wires every component once.

    Pass ``store``, ``notifier``, ``hasher`` or ``clock`` to replace the
    defaults (tests use all four).
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[Store] = None,
        notifier: Optional[Notifier] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        logger.info("runtime_init_started", use_memory_store=settings.use_memory_store)

        if store is None:
            store_type = "memory" if settings.use_memory_store else "postgres"
            try:
                store = (
                    MemoryStore()
                    if settings.use_memory_store
                    else PostgresStore(settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    database_url=_mask_url_password(settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)
        self.store = store

        self.notifier = notifier or EmailService.from_settings(settings)
        self.hasher = hasher or PasswordHasher()
        self.policy = PasswordPolicy(settings)

        self.audit = AuditTrail(store, settings, clock=clock)
        self.failed_logins = FailedLoginTracker(store, settings, clock=clock)
        self.sessions = SessionManager(store, settings, self.audit, clock=clock)
        self.lockouts = LockoutManager(store, settings, self.audit, self.sessions, clock=clock)
        self.invitations = InvitationService(
            store, settings, self.audit, self.notifier, self.hasher, self.policy, clock=clock
        )
        self.password_reset = PasswordResetService(
            store,
            settings,
            self.audit,
            self.notifier,
            self.sessions,
            self.hasher,
            self.policy,
            clock=clock,
        )
        self.auth = AuthService(
            store,
            settings,
            self.audit,
            self.failed_logins,
            self.lockouts,
            self.sessions,
            self.hasher,
            self.policy,
            clock=clock,
        )
        self.registration = RegistrationService(store, settings, self.auth, self.invitations)
        logger.info("runtime_init_completed")

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()
