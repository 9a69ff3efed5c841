from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response

from tenantgate.api.schemas import (
    AcceptInviteRequest,
    AcceptInviteResponse,
    AuthResponse,
    CreateInviteRequest,
    CreateOrgRequest,
    Envelope,
    InviteDetailsResponse,
    InviteListResponse,
    InviteResponse,
    LoginRequest,
    MemberDisableRequest,
    MemberListResponse,
    MemberResponse,
    MembershipResponse,
    MeResponse,
    OrgAdminRequest,
    OrgListResponse,
    OrgResponse,
    PasswordResetRequest,
    SignupRequest,
    TokenRefreshRequest,
    UpdateRoleRequest,
    UserResponse,
)
from tenantgate.config import SessionMode, Settings
from tenantgate.logging import get_logger
from tenantgate.service.access import AccessPolicy
from tenantgate.service.auth import AuthContext
from tenantgate.service.errors import AuthenticationError, ForbiddenError
from tenantgate.service.memberships import Member
from tenantgate.service.runtime import get_runtime
from tenantgate.service.tokens import TokenPair
from tenantgate.storage.models import Role

logger = get_logger(__name__)

router = APIRouter()

REFRESH_COOKIE = "refresh_token"
ACCESS_COOKIE = "access_token"
SESSION_COOKIE = "session"


# dependencies


async def get_principal(
    authorization: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None, alias="X-Session-ID"),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    session: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    """Authenticate the request; every protected route depends on this."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization,
        access_cookie=access_token,
        session_token=x_session_id or session,
    )


def require_org_role(*roles: Role):
    """Dependency factory: caller must hold one of ``roles`` in their session org."""

    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        get_runtime().access.authorize(principal, roles)
        return principal

    return _dependency


async def require_super(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    return AccessPolicy.require_super(principal)


require_org_admin = require_org_role(Role.ADMIN)


# cookies


def _apply_auth_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    secure = settings.secure_cookies
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )
    if settings.session_mode == SessionMode.SESSION:
        response.set_cookie(
            SESSION_COOKIE,
            tokens.refresh_token,
            httponly=True,
            secure=secure,
            samesite="lax",
            max_age=settings.refresh_token_ttl_seconds,
            path="/",
        )


def clear_auth_cookies(response: Response) -> None:
    for name in (REFRESH_COOKIE, ACCESS_COOKIE, SESSION_COOKIE):
        response.delete_cookie(name, path="/")


def _member_response(member: Member) -> MemberResponse:
    return MemberResponse(
        user_id=member.user.id,
        email=member.user.email,
        name=member.user.name,
        role=member.membership.role.value,
        disabled=member.membership.disabled,
        org_id=member.membership.org_id,
        org_name=member.org.name if member.org else None,
    )


# auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Create a plain account with no organization membership."""
    runtime = get_runtime()
    user = runtime.auth.signup(body.email, body.password, body.name)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Non-super users are scoped to ``org_id`` (or their first membership);
    super-admins must not pass an org.

    Raises:
        401: invalid credentials
        403: account, org or membership not usable
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, body.org_id)
    _apply_auth_cookies(response, result.tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user.id,
            is_super=result.user.is_super_admin,
            org_id=result.org_id,
            role=result.role.value if result.role else None,
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_token
    try:
        tokens = await runtime.auth.refresh(presented)
    except (AuthenticationError, ForbiddenError):
        # Dead refresh token: the error response also drops the auth cookies
        request.state.clear_auth_cookies = True
        raise
    _apply_auth_cookies(response, tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=tokens.user_id,
            is_super=tokens.is_super,
            org_id=tokens.org_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    session: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    await runtime.auth.logout((body.refresh_token if body else None) or refresh_token or session)
    clear_auth_cookies(response)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    view = runtime.auth.me(principal)
    return Envelope(
        status="ok",
        data=MeResponse(
            user=UserResponse.from_user(view["user"]),
            org_id=view["org_id"],
            role=view["role"].value if view["role"] else None,
        ),
    )


# organizations (super-admin)


@router.post("/orgs", response_model=Envelope, status_code=201, tags=["orgs"])
async def create_org(body: CreateOrgRequest, principal: AuthContext = Depends(require_super)):
    org = await get_runtime().orgs.create(body.name)
    return Envelope(status="ok", data=OrgResponse.from_org(org))


@router.get("/orgs", response_model=Envelope, tags=["orgs"])
async def list_orgs(principal: AuthContext = Depends(require_super)):
    orgs = get_runtime().orgs.list()
    return Envelope(
        status="ok", data=OrgListResponse(items=[OrgResponse.from_org(o) for o in orgs])
    )


@router.post("/orgs/{org_id}/disable", response_model=Envelope, tags=["orgs"])
async def disable_org(
    org_id: str = Path(..., max_length=128), principal: AuthContext = Depends(require_super)
):
    """Disable an org and revoke every session scoped to it."""
    org = await get_runtime().orgs.disable(org_id)
    return Envelope(status="ok", data=OrgResponse.from_org(org))


@router.post("/orgs/{org_id}/enable", response_model=Envelope, tags=["orgs"])
async def enable_org(
    org_id: str = Path(..., max_length=128), principal: AuthContext = Depends(require_super)
):
    org = await get_runtime().orgs.enable(org_id)
    return Envelope(status="ok", data=OrgResponse.from_org(org))


@router.delete("/orgs/{org_id}", response_model=Envelope, tags=["orgs"])
async def delete_org(
    org_id: str = Path(..., max_length=128), principal: AuthContext = Depends(require_super)
):
    org = await get_runtime().orgs.delete(org_id)
    return Envelope(status="ok", data=OrgResponse.from_org(org))


@router.post("/orgs/{org_id}/undelete", response_model=Envelope, tags=["orgs"])
async def undelete_org(
    org_id: str = Path(..., max_length=128), principal: AuthContext = Depends(require_super)
):
    """Restore a deleted org; it comes back DISABLED."""
    org = await get_runtime().orgs.undelete(org_id)
    return Envelope(status="ok", data=OrgResponse.from_org(org))


# org admin


@router.get("/users/members", response_model=Envelope, tags=["members"])
async def list_members(principal: AuthContext = Depends(require_org_admin)):
    members = get_runtime().memberships.list_members(principal.org_id)
    return Envelope(
        status="ok", data=MemberListResponse(items=[_member_response(m) for m in members])
    )


@router.post("/users/members/{user_id}/role", response_model=Envelope, tags=["members"])
async def update_member_role(
    body: UpdateRoleRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_org_admin),
):
    member = get_runtime().memberships.update_role(principal.org_id, user_id, body.role)
    return Envelope(status="ok", data=MembershipResponse.from_membership(member))


@router.post("/users/members/{user_id}/disable", response_model=Envelope, tags=["members"])
async def toggle_member_disabled(
    user_id: str = Path(..., max_length=128),
    body: Optional[MemberDisableRequest] = None,
    principal: AuthContext = Depends(require_org_admin),
):
    """Disable (or toggle) one membership; the org and other members are untouched."""
    disabled = body.disabled if body else None
    member = get_runtime().memberships.set_disabled(principal.org_id, user_id, disabled)
    return Envelope(status="ok", data=MembershipResponse.from_membership(member))


@router.get("/users/invites", response_model=Envelope, tags=["invites"])
async def list_invites(principal: AuthContext = Depends(require_org_admin)):
    invites_service = get_runtime().invites
    invites = invites_service.list_invites(principal.org_id)
    items: List[InviteResponse] = [
        InviteResponse.from_invite(inv, invites_service.invite_url(inv)) for inv in invites
    ]
    return Envelope(status="ok", data=InviteListResponse(items=items))


@router.post("/users/invite", response_model=Envelope, status_code=201, tags=["invites"])
async def create_invite(
    body: CreateInviteRequest, principal: AuthContext = Depends(require_org_admin)
):
    invites_service = get_runtime().invites
    invite = invites_service.create_invite(
        principal.org_id, body.email, body.role, actor_id=principal.user_id
    )
    return Envelope(
        status="ok",
        data=InviteResponse.from_invite(invite, invites_service.invite_url(invite)),
    )


# public invite flow


@router.get("/users/invite/{token}", response_model=Envelope, tags=["invites"])
async def get_invite(token: str = Path(..., max_length=256)):
    details = get_runtime().invites.get_invite(token)
    return Envelope(
        status="ok",
        data=InviteDetailsResponse(
            email=details["email"],
            org_id=details["org_id"],
            org_name=details["org_name"],
            role=details["role"].value,
        ),
    )


@router.post("/users/invite/{token}/accept", response_model=Envelope, tags=["invites"])
async def accept_invite(body: AcceptInviteRequest, token: str = Path(..., max_length=256)):
    accepted = get_runtime().invites.accept_invite(token, body.name, body.password)
    return Envelope(
        status="ok",
        data=AcceptInviteResponse(
            user_id=accepted.user.id,
            org_id=accepted.membership.org_id,
            role=accepted.membership.role.value,
            created_user=accepted.created_user,
        ),
    )


# super-admin tools


@router.get("/users/super/admins", response_model=Envelope, tags=["super"])
async def list_admins(principal: AuthContext = Depends(require_super)):
    admins = get_runtime().memberships.list_admins()
    return Envelope(
        status="ok", data=MemberListResponse(items=[_member_response(m) for m in admins])
    )


@router.post("/users/super/admins/add", response_model=Envelope, tags=["super"])
async def add_admin(body: OrgAdminRequest, principal: AuthContext = Depends(require_super)):
    member, created = get_runtime().memberships.add_admin(body.email, body.org_id)
    return Envelope(
        status="ok",
        data={
            "membership": MembershipResponse.from_membership(member),
            "created_user": created,
        },
    )


@router.post("/users/super/admins/remove", response_model=Envelope, tags=["super"])
async def remove_admin(body: OrgAdminRequest, principal: AuthContext = Depends(require_super)):
    member = get_runtime().memberships.remove_admin(body.email, body.org_id)
    return Envelope(status="ok", data=MembershipResponse.from_membership(member))


@router.get("/users/super/members/{org_id}", response_model=Envelope, tags=["super"])
async def list_org_members(
    org_id: str = Path(..., max_length=128), principal: AuthContext = Depends(require_super)
):
    members = get_runtime().memberships.list_org_members(org_id)
    return Envelope(
        status="ok", data=MemberListResponse(items=[_member_response(m) for m in members])
    )


@router.post("/users/super/members/{user_id}/password", response_model=Envelope, tags=["super"])
async def reset_member_password(
    body: PasswordResetRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_super),
):
    user = get_runtime().memberships.reset_password(user_id, body.password)
    logger.info(
        "super_admin_password_reset",
        actor_id=principal.user_id,
        user_id=user.id,
        client_ip=request.client.host if request.client else None,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))
