"""Contract and helpers shared between the memory and postgres stores."""

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional, Protocol

from tenantgate.storage.models import Invite, Membership, Organization, OrgStatus, Role, User


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def slugify(name: str) -> str:
    """Derive the unique org slug from its display name."""
    ascii_name = (
        unicodedata.normalize("NFKD", name or "").encode("ascii", "ignore").decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_name.lower()).strip("-")
    return slug or "org"


class IdentityStore(Protocol):
    """Document store for users, organizations, memberships and invites.

    Uniqueness is enforced on user email, org slug, (user_id, org_id) and
    invite token; violations raise ConstraintViolation.
    """

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        is_super_admin: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password(self, user_id: str, password_hash: str, password_algo: str) -> Optional[User]: ...

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]: ...

    # organizations
    def create_org(self, name: str, slug: str) -> Organization: ...

    def get_org(self, org_id: str) -> Optional[Organization]: ...

    def list_orgs(self) -> List[Organization]: ...

    def transition_org(
        self, org_id: str, status: OrgStatus, *, epoch: Optional[int] = None
    ) -> Optional[Organization]:
        """Set status and move auth_epoch in one write.

        With ``epoch=None`` the epoch is incremented by one; otherwise it is
        set to ``max(epoch, current + 1)`` so it can never go backwards.
        """
        ...

    # memberships
    def create_membership(self, user_id: str, org_id: str, role: Role) -> Membership: ...

    def get_membership(self, user_id: str, org_id: str) -> Optional[Membership]: ...

    def upsert_membership(self, user_id: str, org_id: str, role: Role) -> Membership: ...

    def update_membership(
        self,
        user_id: str,
        org_id: str,
        *,
        role: Optional[Role] = None,
        disabled: Optional[bool] = None,
    ) -> Optional[Membership]: ...

    def list_user_memberships(self, user_id: str) -> List[Membership]: ...

    def list_org_memberships(self, org_id: str) -> List[Membership]: ...

    def list_memberships_by_role(self, role: Role) -> List[Membership]: ...

    def delete_org_memberships(self, org_id: str) -> int: ...

    # invites
    def create_invite(self, invite: Invite) -> Invite: ...

    def get_invite(self, token: str) -> Optional[Invite]: ...

    def delete_pending_invites(self, email: str, org_id: str) -> int: ...

    def list_pending_invites(self, org_id: str) -> List[Invite]: ...

    def mark_invite_accepted(self, token: str) -> bool: ...
