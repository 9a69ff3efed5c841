from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from tenantgate.logging import get_logger
from tenantgate.service.auth import validate_email
from tenantgate.service.errors import BadRequestError, NotFoundError, backend_guard
from tenantgate.service.invites import parse_role
from tenantgate.service.passwords import PasswordHasher, validate_password
from tenantgate.storage.common import IdentityStore
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import Membership, Organization, Role, User

logger = get_logger(__name__)


@dataclass
class Member:
    membership: Membership
    user: User
    org: Optional[Organization] = None


class MembershipService:
    """Org-admin member management and super-admin provisioning tools.

    Disabling a membership only affects that user in that org; it never moves
    the org's auth epoch, so other members keep their sessions.
    """

    def __init__(self, store: IdentityStore, hasher: PasswordHasher) -> None:
        self.store = store
        self.hasher = hasher

    def _members(self, memberships: List[Membership], *, with_org: bool = False) -> List[Member]:
        found: List[Member] = []
        orgs: dict[str, Optional[Organization]] = {}
        for membership in memberships:
            user = self.store.get_user(membership.user_id)
            if user is None:
                continue
            org = None
            if with_org:
                if membership.org_id not in orgs:
                    orgs[membership.org_id] = self.store.get_org(membership.org_id)
                org = orgs[membership.org_id]
            found.append(Member(membership=membership, user=user, org=org))
        return found

    def list_members(self, org_id: str) -> List[Member]:
        with backend_guard("list_members"):
            return self._members(self.store.list_org_memberships(org_id))

    def update_role(self, org_id: str, user_id: str, role: Optional[str]) -> Membership:
        if role is None:
            raise BadRequestError("invalid role", detail={"field": "role"})
        new_role = parse_role(role)
        with backend_guard("update_role"):
            member = self.store.update_membership(user_id, org_id, role=new_role)
        if member is None:
            raise NotFoundError("membership not found")
        logger.info("member_role_updated", org_id=org_id, user_id=user_id, role=new_role.value)
        return member

    def set_disabled(
        self, org_id: str, user_id: str, disabled: Optional[bool] = None
    ) -> Membership:
        with backend_guard("set_member_disabled"):
            current = self.store.get_membership(user_id, org_id)
            if current is None:
                raise NotFoundError("membership not found")
            target = (not current.disabled) if disabled is None else disabled
            member = self.store.update_membership(user_id, org_id, disabled=target)
        if member is None:
            raise NotFoundError("membership not found")
        logger.info("member_disabled_set", org_id=org_id, user_id=user_id, disabled=target)
        return member

    # super-admin tools

    def add_admin(self, email: str, org_id: str) -> Tuple[Membership, bool]:
        """Promote a user to ADMIN in ``org_id``, creating an unclaimed account if needed."""
        email = validate_email(email)
        with backend_guard("add_admin"):
            if self.store.get_org(org_id) is None:
                raise NotFoundError("organization not found")
            user = self.store.get_user_by_email(email)
            created = False
            if user is None:
                try:
                    user = self.store.create_user(email, name=email.split("@")[0])
                    created = True
                except ConstraintViolation:
                    user = self.store.get_user_by_email(email)
            if user is None:
                raise NotFoundError("user not found")
            if user.is_super_admin:
                raise BadRequestError("super admins do not belong to organizations")
            member = self.store.upsert_membership(user.id, org_id, Role.ADMIN)
        logger.info("org_admin_added", org_id=org_id, user_id=user.id, created_user=created)
        return member, created

    def remove_admin(self, email: str, org_id: str) -> Membership:
        with backend_guard("remove_admin"):
            user = self.store.get_user_by_email(validate_email(email))
            if user is None:
                raise NotFoundError("user not found")
            member = self.store.update_membership(user.id, org_id, role=Role.USER)
        if member is None:
            raise NotFoundError("membership not found")
        logger.info("org_admin_removed", org_id=org_id, user_id=user.id)
        return member

    def list_admins(self) -> List[Member]:
        with backend_guard("list_admins"):
            return self._members(self.store.list_memberships_by_role(Role.ADMIN), with_org=True)

    def list_org_members(self, org_id: str) -> List[Member]:
        with backend_guard("list_org_members"):
            if self.store.get_org(org_id) is None:
                raise NotFoundError("organization not found")
            return self._members(self.store.list_org_memberships(org_id), with_org=True)

    def reset_password(self, user_id: str, password: Optional[str]) -> User:
        validate_password(password)
        with backend_guard("reset_password"):
            user = self.store.set_password(
                user_id, self.hasher.hash(password), self.hasher.algorithm
            )
        if user is None:
            raise NotFoundError("user not found")
        logger.info("password_reset_by_super_admin", user_id=user_id)
        return user
