from __future__ import annotations

from typing import Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.auth import AuthService
from gatekeep.service.credentials import normalize_email
from gatekeep.service.errors import PermissionDeniedError, ValidationError
from gatekeep.service.invitations import InvitationService
from gatekeep.storage.models import Account, AccountStatus
from gatekeep.storage.repository import Store


class RegistrationService:
    """Self-service sign-up.

    With ``email_verification_required`` the new account starts SUSPENDED and
    gets a verification invitation; :meth:`verify_email` activates it.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        auth: AuthService,
        invitations: InvitationService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.auth = auth
        self.invitations = invitations
        self.logger = get_logger(__name__)

    def is_email_in_use(self, email: Optional[str]) -> bool:
        normalized = normalize_email(email)
        if not normalized:
            return False
        return self.store.accounts.get_by_email(normalized) is not None

    def register(
        self,
        email: str,
        password: str,
        *,
        name: str,
        tenant_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Account:
        if not self.settings.self_registration_allowed:
            self.logger.info("registration_refused", reason="self_registration_disabled", ip=ip)
            raise PermissionDeniedError("self-registration is disabled")
        if not name or not name.strip():
            raise ValidationError("name is required", detail={"field": "name"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})

        pending = self.settings.email_verification_required
        account = self.auth.create_account(
            email,
            password,
            status=AccountStatus.SUSPENDED if pending else AccountStatus.ACTIVE,
            name=name.strip(),
            tenant_id=tenant_id,
            ip=ip,
        )
        if pending:
            self.invitations.issue_verification(account.id, ip)
        self.logger.info(
            "account_registered",
            account_id=account.id,
            verification_pending=pending,
        )
        return account

    def verify_email(self, token: Optional[str], ip: Optional[str] = None) -> bool:
        return self.invitations.verify_email(token, ip) is not None
