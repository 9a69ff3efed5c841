from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from tenantgate.logging import get_logger
from tenantgate.storage.common import normalize_email
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    Invite,
    Membership,
    Organization,
    OrgStatus,
    Role,
    User,
    new_id,
)


class MemoryStore:
    """In-memory identity store, optionally snapshotted to a JSON file."""

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.orgs: Dict[str, Organization] = {}
        self.memberships: Dict[Tuple[str, str], Membership] = {}
        self.invites: Dict[str, Invite] = {}
        # RLock so nested helpers can re-enter from the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # persistence

    def _state_path(self) -> Optional[Path]:
        if not self.fs_root:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        return value

    def _dump(self, obj: Any) -> dict:
        return {k: self._encode(v) for k, v in asdict(obj).items()}

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._dump(u) for u in self.users.values()],
            "orgs": [self._dump(o) for o in self.orgs.values()],
            "memberships": [self._dump(m) for m in self.memberships.values()],
            "invites": [self._dump(i) for i in self.invites.values()],
        }
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None or not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_state_unreadable", error=str(exc))
            return False
        for raw in state.get("users", []):
            raw["created_at"] = datetime.fromisoformat(raw["created_at"])
            user = User(**raw)
            self.users[user.id] = user
        for raw in state.get("orgs", []):
            raw["created_at"] = datetime.fromisoformat(raw["created_at"])
            raw["status"] = OrgStatus(raw["status"])
            org = Organization(**raw)
            self.orgs[org.id] = org
        for raw in state.get("memberships", []):
            raw["created_at"] = datetime.fromisoformat(raw["created_at"])
            raw["role"] = Role(raw["role"])
            member = Membership(**raw)
            self.memberships[(member.user_id, member.org_id)] = member
        for raw in state.get("invites", []):
            raw["created_at"] = datetime.fromisoformat(raw["created_at"])
            raw["expires_at"] = datetime.fromisoformat(raw["expires_at"])
            raw["role"] = Role(raw["role"])
            invite = Invite(**raw)
            self.invites[invite.token] = invite
        return True

    # users

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        is_super_admin: bool = False,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                name=name,
                password_hash=password_hash,
                password_algo=password_algo,
                is_super_admin=is_super_admin,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def set_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_algo = password_algo
            self._persist_state()
            return user

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.disabled = disabled
            self._persist_state()
            return user

    # organizations

    def create_org(self, name: str, slug: str) -> Organization:
        with self._data_lock:
            if any(existing.slug == slug for existing in self.orgs.values()):
                raise ConstraintViolation("organization slug already exists", {"field": "slug"})
            org = Organization(id=new_id(), name=name, slug=slug)
            self.orgs[org.id] = org
            self._persist_state()
            return org

    def get_org(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            return self.orgs.get(org_id)

    def list_orgs(self) -> List[Organization]:
        with self._data_lock:
            return sorted(self.orgs.values(), key=lambda o: o.created_at, reverse=True)

    def transition_org(
        self, org_id: str, status: OrgStatus, *, epoch: Optional[int] = None
    ) -> Optional[Organization]:
        with self._data_lock:
            org = self.orgs.get(org_id)
            if not org:
                return None
            floor = org.auth_epoch + 1
            org.auth_epoch = floor if epoch is None else max(int(epoch), floor)
            org.status = status
            self._persist_state()
            return org

    # memberships

    def create_membership(self, user_id: str, org_id: str, role: Role) -> Membership:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if org_id not in self.orgs:
                raise ConstraintViolation("organization does not exist", {"org_id": org_id})
            if (user_id, org_id) in self.memberships:
                raise ConstraintViolation(
                    "membership already exists", {"user_id": user_id, "org_id": org_id}
                )
            member = Membership(id=new_id(), user_id=user_id, org_id=org_id, role=Role(role))
            self.memberships[(user_id, org_id)] = member
            self._persist_state()
            return member

    def get_membership(self, user_id: str, org_id: str) -> Optional[Membership]:
        with self._data_lock:
            return self.memberships.get((user_id, org_id))

    def upsert_membership(self, user_id: str, org_id: str, role: Role) -> Membership:
        with self._data_lock:
            existing = self.memberships.get((user_id, org_id))
            if existing:
                existing.role = Role(role)
                self._persist_state()
                return existing
            return self.create_membership(user_id, org_id, role)

    def update_membership(
        self,
        user_id: str,
        org_id: str,
        *,
        role: Optional[Role] = None,
        disabled: Optional[bool] = None,
    ) -> Optional[Membership]:
        with self._data_lock:
            member = self.memberships.get((user_id, org_id))
            if not member:
                return None
            if role is not None:
                member.role = Role(role)
            if disabled is not None:
                member.disabled = disabled
            self._persist_state()
            return member

    def list_user_memberships(self, user_id: str) -> List[Membership]:
        with self._data_lock:
            found = [m for m in self.memberships.values() if m.user_id == user_id]
            return sorted(found, key=lambda m: m.created_at)

    def list_org_memberships(self, org_id: str) -> List[Membership]:
        with self._data_lock:
            found = [m for m in self.memberships.values() if m.org_id == org_id]
            return sorted(found, key=lambda m: m.created_at, reverse=True)

    def list_memberships_by_role(self, role: Role) -> List[Membership]:
        with self._data_lock:
            return [m for m in self.memberships.values() if m.role == Role(role)]

    def delete_org_memberships(self, org_id: str) -> int:
        with self._data_lock:
            stale = [key for key, m in self.memberships.items() if m.org_id == org_id]
            for key in stale:
                self.memberships.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # invites

    def create_invite(self, invite: Invite) -> Invite:
        with self._data_lock:
            if invite.token in self.invites:
                raise ConstraintViolation("invite token already exists", {"field": "token"})
            invite.email = normalize_email(invite.email)
            self.invites[invite.token] = invite
            self._persist_state()
            return invite

    def get_invite(self, token: str) -> Optional[Invite]:
        with self._data_lock:
            return self.invites.get(token)

    def delete_pending_invites(self, email: str, org_id: str) -> int:
        email = normalize_email(email)
        with self._data_lock:
            stale = [
                token
                for token, inv in self.invites.items()
                if inv.email == email and inv.org_id == org_id and not inv.accepted
            ]
            for token in stale:
                self.invites.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_pending_invites(self, org_id: str) -> List[Invite]:
        with self._data_lock:
            found = [
                inv for inv in self.invites.values() if inv.org_id == org_id and not inv.accepted
            ]
            return sorted(found, key=lambda i: i.created_at, reverse=True)

    def mark_invite_accepted(self, token: str) -> bool:
        with self._data_lock:
            invite = self.invites.get(token)
            if not invite or invite.accepted:
                return False
            invite.accepted = True
            self._persist_state()
            return True
