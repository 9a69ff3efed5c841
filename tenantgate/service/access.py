from __future__ import annotations

from typing import Iterable

from tenantgate.logging import get_logger
from tenantgate.service.auth import AuthContext
from tenantgate.service.errors import (
    ForbiddenError,
    MembershipDisabledError,
    NoMembershipError,
    backend_guard,
)
from tenantgate.storage.common import IdentityStore
from tenantgate.storage.models import Membership, Role

logger = get_logger(__name__)


class AccessPolicy:
    """Role checks for tenant-scoped actions. Runs after authentication."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def authorize(self, ctx: AuthContext, required_roles: Iterable[Role]) -> Membership:
        if not ctx.org_id:
            raise NoMembershipError("no organization in session")
        with backend_guard("authorize"):
            member = self.store.get_membership(ctx.user_id, ctx.org_id)
        if member is None:
            raise NoMembershipError("no membership in organization")
        if member.disabled:
            raise MembershipDisabledError("membership disabled by the organization admin")
        allowed = {Role(role) for role in required_roles}
        if allowed and member.role not in allowed:
            logger.info(
                "role_denied",
                user_id=ctx.user_id,
                org_id=ctx.org_id,
                role=member.role.value,
            )
            raise ForbiddenError("insufficient role")
        return member

    @staticmethod
    def require_super(ctx: AuthContext) -> AuthContext:
        if not ctx.is_super:
            raise ForbiddenError("super admin only")
        return ctx
