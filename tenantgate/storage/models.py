from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrgStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    DELETED = "DELETED"


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    is_super_admin: bool = False
    disabled: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    status: OrgStatus = OrgStatus.ACTIVE
    auth_epoch: int = 1
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == OrgStatus.ACTIVE


@dataclass
class Membership:
    id: str
    user_id: str
    org_id: str
    role: Role = Role.USER
    disabled: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Invite:
    token: str
    email: str
    org_id: str
    role: Role
    expires_at: datetime
    created_by: Optional[str] = None
    accepted: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    @classmethod
    def new(
        cls,
        token: str,
        email: str,
        org_id: str,
        role: Role,
        *,
        ttl_hours: int,
        created_by: Optional[str] = None,
    ) -> "Invite":
        now = utcnow()
        return cls(
            token=token,
            email=email,
            org_id=org_id,
            role=role,
            expires_at=now + timedelta(hours=ttl_hours),
            created_by=created_by,
            created_at=now,
        )


@dataclass
class RefreshSession:
    """Server-side half of a token pair, held only in the revocation store."""

    token: str
    user_id: str
    org_id: Optional[str] = None
    org_epoch: Optional[int] = None
    is_super: bool = False

    def to_payload(self) -> dict:
        return {
            "user_id": self.user_id,
            "org_id": self.org_id,
            "org_epoch": self.org_epoch,
            "is_super": self.is_super,
        }

    @classmethod
    def from_payload(cls, token: str, payload: dict) -> "RefreshSession":
        epoch = payload.get("org_epoch")
        return cls(
            token=token,
            user_id=str(payload["user_id"]),
            org_id=payload.get("org_id"),
            org_epoch=int(epoch) if epoch is not None else None,
            is_super=bool(payload.get("is_super", False)),
        )


def new_id() -> str:
    return str(uuid.uuid4())
