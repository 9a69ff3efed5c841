from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import List, Optional

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.auth import validate_email
from tenantgate.service.errors import (
    BadRequestError,
    ConflictError,
    InvalidInviteError,
    InviteExpiredError,
    NotFoundError,
    backend_guard,
)
from tenantgate.service.passwords import PasswordHasher, validate_password
from tenantgate.storage.common import IdentityStore
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import Invite, Membership, Role, User

logger = get_logger(__name__)

INVITE_TOKEN_BYTES = 32


def parse_role(role: Optional[str], default: Role = Role.USER) -> Role:
    if role is None:
        return default
    try:
        return Role(str(role).upper())
    except ValueError:
        raise BadRequestError("invalid role", detail={"field": "role"}) from None


@dataclass
class AcceptedInvite:
    user: User
    membership: Membership
    created_user: bool


class InviteService:
    """Single-use invites that provision a user and their membership."""

    def __init__(self, store: IdentityStore, hasher: PasswordHasher, settings: Settings) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings

    def invite_url(self, invite: Invite) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/invite/{invite.token}"

    def create_invite(
        self,
        org_id: str,
        email: str,
        role: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Invite:
        email = validate_email(email)
        invite_role = parse_role(role)
        with backend_guard("create_invite"):
            if self.store.get_org(org_id) is None:
                raise NotFoundError("organization not found")
            user = self.store.get_user_by_email(email)
            if user and user.is_super_admin:
                raise BadRequestError("super admins do not belong to organizations")
            if user and self.store.get_membership(user.id, org_id):
                raise ConflictError("user already belongs to this organization")
            # Only the newest invite for an (email, org) pair stays redeemable
            self.store.delete_pending_invites(email, org_id)
            invite = Invite.new(
                secrets.token_hex(INVITE_TOKEN_BYTES),
                email,
                org_id,
                invite_role,
                ttl_hours=self.settings.invite_ttl_hours,
                created_by=actor_id,
            )
            invite = self.store.create_invite(invite)
        logger.info("invite_created", org_id=org_id, role=invite_role.value, actor_id=actor_id)
        return invite

    def _load_pending(self, token: str) -> Invite:
        with backend_guard("load_invite"):
            invite = self.store.get_invite(token) if token else None
        if invite is None or invite.accepted:
            raise InvalidInviteError("invalid or expired invite")
        if invite.is_expired():
            raise InviteExpiredError("invite expired")
        return invite

    def get_invite(self, token: str) -> dict:
        invite = self._load_pending(token)
        with backend_guard("get_invite"):
            org = self.store.get_org(invite.org_id)
        if org is None:
            raise InvalidInviteError("invalid or expired invite")
        return {
            "email": invite.email,
            "org_id": org.id,
            "org_name": org.name,
            "role": invite.role,
        }

    def list_invites(self, org_id: str) -> List[Invite]:
        with backend_guard("list_invites"):
            return self.store.list_pending_invites(org_id)

    def accept_invite(
        self, token: str, name: Optional[str] = None, password: Optional[str] = None
    ) -> AcceptedInvite:
        invite = self._load_pending(token)
        with backend_guard("accept_invite"):
            user = self.store.get_user_by_email(invite.email)
            created_user = False
            if user is not None and user.is_super_admin:
                raise BadRequestError("super admins do not belong to organizations")
            if user is None:
                validate_password(password)
                try:
                    user = self.store.create_user(
                        invite.email,
                        name=name or invite.email.split("@")[0],
                        password_hash=self.hasher.hash(password),
                        password_algo=self.hasher.algorithm,
                    )
                    created_user = True
                except ConstraintViolation:
                    # Created concurrently by a parallel accept
                    user = self.store.get_user_by_email(invite.email)
            elif not user.has_password and password:
                validate_password(password)
                user = self.store.set_password(
                    user.id, self.hasher.hash(password), self.hasher.algorithm
                )

            membership = self.store.get_membership(user.id, invite.org_id)
            if membership is None:
                try:
                    membership = self.store.create_membership(
                        user.id, invite.org_id, invite.role
                    )
                except ConstraintViolation:
                    membership = self.store.get_membership(user.id, invite.org_id)
            if membership is None:
                raise InvalidInviteError("invalid or expired invite")
            if not self.store.mark_invite_accepted(invite.token):
                # Lost a concurrent accept of the same token
                raise InvalidInviteError("invalid or expired invite")
        logger.info(
            "invite_accepted",
            org_id=invite.org_id,
            user_id=user.id,
            created_user=created_user,
        )
        return AcceptedInvite(user=user, membership=membership, created_user=created_user)
