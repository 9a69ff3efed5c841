from __future__ import annotations

import time
from typing import List, Optional

from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    backend_guard,
)
from tenantgate.service.tokens import TokenService
from tenantgate.storage.common import IdentityStore, slugify
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import Organization, OrgStatus

logger = get_logger(__name__)


def fresh_epoch(current: int) -> int:
    """Epoch for a re-opened org: strictly larger than any earlier one."""
    return max(current + 1, int(time.time() * 1000))


class OrgLifecycleManager:
    """Org status transitions and the session revocation that goes with them.

    The primary store is written first, then the disabled marker and the new
    epoch are published, and only then are the org's refresh sessions purged,
    so a request racing the purge already sees the org as revoked.
    """

    def __init__(self, store: IdentityStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def _get(self, org_id: str) -> Organization:
        with backend_guard("get_org"):
            org = self.store.get_org(org_id)
        if org is None:
            raise NotFoundError("organization not found")
        return org

    def _transition(
        self, org_id: str, status: OrgStatus, *, epoch: Optional[int] = None
    ) -> Organization:
        with backend_guard("transition_org"):
            org = self.store.transition_org(org_id, status, epoch=epoch)
        if org is None:
            raise NotFoundError("organization not found")
        return org

    def epoch_of(self, org_id: str) -> Optional[int]:
        """Primary-store epoch lookup used when the cache has no value."""
        org = self.store.get_org(org_id)
        return org.auth_epoch if org else None

    async def create(self, name: Optional[str]) -> Organization:
        name = (name or "").strip()
        if not name:
            raise BadRequestError("organization name is required", detail={"field": "name"})
        try:
            with backend_guard("create_org"):
                org = self.store.create_org(name, slugify(name))
        except ConstraintViolation as exc:
            raise ConflictError("organization already exists", detail=exc.detail) from exc
        await self.tokens.set_org_epoch(org.id, org.auth_epoch)
        logger.info("org_created", org_id=org.id, slug=org.slug)
        return org

    def list(self) -> List[Organization]:
        with backend_guard("list_orgs"):
            return self.store.list_orgs()

    async def _revoke(self, org: Organization) -> int:
        await self.tokens.mark_org_disabled(org.id)
        await self.tokens.set_org_epoch(org.id, org.auth_epoch)
        return await self.tokens.revoke_all_for_org(org.id)

    async def disable(self, org_id: str) -> Organization:
        if self._get(org_id).status == OrgStatus.DELETED:
            raise BadRequestError("organization is deleted; restore it first")
        org = self._transition(org_id, OrgStatus.DISABLED)
        revoked = await self._revoke(org)
        logger.info("org_disabled", org_id=org.id, auth_epoch=org.auth_epoch, revoked=revoked)
        return org

    async def delete(self, org_id: str) -> Organization:
        if self._get(org_id).status == OrgStatus.DELETED:
            raise BadRequestError("organization is already deleted")
        org = self._transition(org_id, OrgStatus.DELETED)
        revoked = await self._revoke(org)
        # Memberships go last so a failed transition or purge leaves them intact
        with backend_guard("delete_org_memberships"):
            removed = self.store.delete_org_memberships(org_id)
        logger.info(
            "org_deleted",
            org_id=org.id,
            auth_epoch=org.auth_epoch,
            memberships_removed=removed,
            revoked=revoked,
        )
        return org

    async def enable(self, org_id: str) -> Organization:
        current = self._get(org_id)
        if current.status == OrgStatus.DELETED:
            raise BadRequestError("organization is deleted; restore it first")
        org = self._transition(
            org_id, OrgStatus.ACTIVE, epoch=fresh_epoch(current.auth_epoch)
        )
        await self.tokens.mark_org_enabled(org.id)
        await self.tokens.set_org_epoch(org.id, org.auth_epoch)
        logger.info("org_enabled", org_id=org.id, auth_epoch=org.auth_epoch)
        return org

    async def undelete(self, org_id: str) -> Organization:
        current = self._get(org_id)
        if current.status != OrgStatus.DELETED:
            raise BadRequestError("organization is not deleted")
        # Leftovers from a delete that failed after its transition
        with backend_guard("delete_org_memberships"):
            self.store.delete_org_memberships(org_id)
        org = self._transition(
            org_id, OrgStatus.DISABLED, epoch=fresh_epoch(current.auth_epoch)
        )
        await self.tokens.mark_org_disabled(org.id)
        await self.tokens.set_org_epoch(org.id, org.auth_epoch)
        logger.info("org_restored", org_id=org.id, auth_epoch=org.auth_epoch)
        return org
