from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tenantgate.config import SessionMode, Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    AccountDisabledError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    MembershipDisabledError,
    NoMembershipError,
    OrgAccessRevokedError,
    OrgRevokedError,
    SuperAdminOrgError,
    ValidationError,
    backend_guard,
)
from tenantgate.service.passwords import PasswordHasher, validate_password
from tenantgate.service.tokens import TokenPair, TokenService
from tenantgate.storage.common import IdentityStore, normalize_email
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import Role, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """Identity of the caller, resolved once per request and passed down."""

    user_id: str
    org_id: Optional[str] = None
    is_super: bool = False
    session_token: Optional[str] = None


@dataclass
class LoginResult:
    user: User
    org_id: Optional[str]
    role: Optional[Role]
    tokens: TokenPair


def validate_email(email: Optional[str]) -> str:
    normalized = normalize_email(email or "")
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain or " " in normalized:
        raise ValidationError("invalid email", detail={"field": "email"})
    return normalized


class AuthService:
    """Credential checks, session issuance and per-request authentication."""

    def __init__(
        self,
        store: IdentityStore,
        tokens: TokenService,
        hasher: PasswordHasher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.settings = settings
        self.logger = logger

    # request authentication

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(
        self,
        authorization: Optional[str] = None,
        *,
        access_cookie: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> AuthContext:
        """Resolve and liveness-check the caller's credential.

        In ``token`` mode the signed access token (bearer header first, then
        the access cookie) supplies the claims. In ``session`` mode the opaque
        session token is resolved against the revocation store. Either way the
        org epoch stamped at issue time must still match the org's current
        epoch, or the request is refused.
        """

        if self.settings.session_mode == SessionMode.SESSION:
            session = await self.tokens.session(session_token)
            if session is None:
                raise AuthenticationError("session expired or unknown")
            user_id = session.user_id
            org_id = session.org_id
            org_epoch = session.org_epoch
            is_super = session.is_super
        else:
            claims = self.tokens.verify_access(
                self._extract_bearer(authorization) or access_cookie
            )
            if claims is None:
                raise AuthenticationError("invalid or missing credentials")
            user_id = str(claims["sub"])
            org_id = claims.get("org_id")
            org_epoch = claims.get("org_epoch")
            is_super = bool(claims.get("is_super", False))
            session_token = None

        with backend_guard("authenticate"):
            user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError("invalid or missing credentials")
        if user.disabled:
            raise AccountDisabledError("account disabled")

        if is_super:
            if org_id is not None or not user.is_super_admin:
                raise AuthenticationError("invalid or missing credentials")
            return AuthContext(user_id=user.id, is_super=True, session_token=session_token)

        if not org_id:
            raise AuthenticationError("invalid or missing credentials")
        await self._check_org_liveness(org_id, org_epoch, session_token)
        return AuthContext(user_id=user.id, org_id=org_id, session_token=session_token)

    async def _check_org_liveness(
        self, org_id: str, org_epoch: Optional[int], session_token: Optional[str]
    ) -> None:
        with backend_guard("org_liveness"):
            org = self.store.get_org(org_id)
        reason: Optional[str] = None
        if org is None or not org.is_active:
            reason = "org_inactive"
        elif await self.tokens.is_org_disabled(org_id):
            reason = "org_disabled"
        else:
            current = await self.tokens.current_epoch(org_id)
            if org_epoch is None or current != int(org_epoch):
                reason = "epoch_mismatch"
        if reason is None:
            return
        if session_token:
            await self.tokens.revoke(session_token)
        self.logger.info("auth_rejected", reason=reason, org_id=org_id)
        raise OrgAccessRevokedError("organization access revoked")

    # account operations

    def _check_credentials(self, email: str, password: str) -> User:
        with backend_guard("login"):
            user = self.store.get_user_by_email(email)
        if user is None or not user.has_password:
            self.hasher.burn(password or "")
            raise AuthenticationError("invalid credentials")
        if not self.hasher.verify(user.password_hash, password or ""):
            raise AuthenticationError("invalid credentials")
        return user

    async def login(
        self, email: str, password: str, org_id: Optional[str] = None
    ) -> LoginResult:
        user = self._check_credentials(normalize_email(email), password)
        if user.disabled:
            self.logger.info("login_rejected", reason="account_disabled", user_id=user.id)
            raise AccountDisabledError("account disabled")

        if user.is_super_admin:
            if org_id:
                raise SuperAdminOrgError("super admins do not belong to organizations")
            tokens = await self.tokens.issue(user.id, is_super=True)
            self.logger.info("login_succeeded", user_id=user.id, is_super=True)
            return LoginResult(user=user, org_id=None, role=None, tokens=tokens)

        with backend_guard("login"):
            if not org_id:
                memberships = self.store.list_user_memberships(user.id)
                if not memberships:
                    raise NoMembershipError("no organization found for this user")
                org_id = memberships[0].org_id
            org = self.store.get_org(org_id)
            if org is None or not org.is_active:
                raise OrgRevokedError("organization is disabled or not found")
            member = self.store.get_membership(user.id, org_id)
        if member is None:
            raise NoMembershipError("no access to organization")
        if member.disabled:
            raise MembershipDisabledError("membership disabled by the organization admin")

        await self.tokens.set_org_epoch(org.id, org.auth_epoch)
        tokens = await self.tokens.issue(user.id, org.id, org.auth_epoch)
        self.logger.info("login_succeeded", user_id=user.id, org_id=org.id)
        return LoginResult(user=user, org_id=org.id, role=member.role, tokens=tokens)

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        return await self.tokens.rotate(refresh_token)

    async def logout(self, refresh_token: Optional[str]) -> None:
        await self.tokens.revoke(refresh_token)

    def me(self, ctx: AuthContext) -> dict:
        with backend_guard("me"):
            user = self.store.get_user(ctx.user_id)
            member = (
                self.store.get_membership(ctx.user_id, ctx.org_id) if ctx.org_id else None
            )
        if user is None:
            raise AuthenticationError("invalid or missing credentials")
        return {
            "user": user,
            "org_id": ctx.org_id,
            "role": member.role if member else None,
        }

    def signup(self, email: str, password: str, name: Optional[str] = None) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        email = validate_email(email)
        validate_password(password)
        try:
            with backend_guard("signup"):
                user = self.store.create_user(
                    email,
                    name=name,
                    password_hash=self.hasher.hash(password),
                    password_algo=self.hasher.algorithm,
                )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail=exc.detail) from exc
        self.logger.info("user_signed_up", user_id=user.id)
        return user

    def bootstrap_super_admin(self, email: str, password: str) -> User:
        """Create a super-admin, or reset the password of an existing one."""
        email = validate_email(email)
        validate_password(password)
        password_hash = self.hasher.hash(password)
        existing = self.store.get_user_by_email(email)
        if existing is None:
            user = self.store.create_user(
                email,
                password_hash=password_hash,
                password_algo=self.hasher.algorithm,
                is_super_admin=True,
            )
        elif not existing.is_super_admin:
            raise ConflictError("user exists and is not a super admin")
        else:
            user = self.store.set_password(existing.id, password_hash, self.hasher.algorithm)
        self.logger.info("super_admin_bootstrapped", user_id=user.id)
        return user
