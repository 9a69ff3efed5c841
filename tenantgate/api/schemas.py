from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantgate.storage.models import Invite, Membership, Organization, User

MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 128
MAX_PASSWORD_LENGTH = 1024


def _normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("invalid email address")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# requests


class SignupRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _normalize_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    org_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _normalize_email(value)


class TokenRefreshRequest(BaseModel):
    # Falls back to the refresh cookie when omitted
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class CreateOrgRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)


class UpdateRoleRequest(BaseModel):
    role: str


class MemberDisableRequest(BaseModel):
    # None toggles the current state
    disabled: Optional[bool] = None


class CreateInviteRequest(BaseModel):
    email: str
    role: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _normalize_email(value)


class AcceptInviteRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class OrgAdminRequest(BaseModel):
    email: str
    org_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _normalize_email(value)


class PasswordResetRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


# responses


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    is_super_admin: bool = False
    disabled: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            is_super_admin=user.is_super_admin,
            disabled=user.disabled,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user_id: str
    is_super: bool = False
    org_id: Optional[str] = None
    role: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    user: UserResponse
    org_id: Optional[str] = None
    role: Optional[str] = None


class OrgResponse(BaseModel):
    id: str
    name: str
    slug: str
    status: str
    auth_epoch: int
    created_at: datetime

    @classmethod
    def from_org(cls, org: Organization) -> "OrgResponse":
        return cls(
            id=org.id,
            name=org.name,
            slug=org.slug,
            status=org.status.value,
            auth_epoch=org.auth_epoch,
            created_at=org.created_at,
        )


class OrgListResponse(BaseModel):
    items: List[OrgResponse]


class MembershipResponse(BaseModel):
    id: str
    user_id: str
    org_id: str
    role: str
    disabled: bool = False

    @classmethod
    def from_membership(cls, member: Membership) -> "MembershipResponse":
        return cls(
            id=member.id,
            user_id=member.user_id,
            org_id=member.org_id,
            role=member.role.value,
            disabled=member.disabled,
        )


class MemberResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str
    disabled: bool = False
    org_id: Optional[str] = None
    org_name: Optional[str] = None


class MemberListResponse(BaseModel):
    items: List[MemberResponse]


class InviteResponse(BaseModel):
    email: str
    org_id: str
    role: str
    expires_at: datetime
    created_at: datetime
    invite_url: str

    @classmethod
    def from_invite(cls, invite: Invite, invite_url: str) -> "InviteResponse":
        return cls(
            email=invite.email,
            org_id=invite.org_id,
            role=invite.role.value,
            expires_at=invite.expires_at,
            created_at=invite.created_at,
            invite_url=invite_url,
        )


class InviteListResponse(BaseModel):
    items: List[InviteResponse]


class InviteDetailsResponse(BaseModel):
    email: str
    org_id: str
    org_name: str
    role: str


class AcceptInviteResponse(BaseModel):
    user_id: str
    org_id: str
    role: str
    created_user: bool
