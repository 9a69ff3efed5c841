from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    ExpiredOrUnknownTokenError,
    OrgRevokedError,
    backend_guard,
)
from tenantgate.storage.models import RefreshSession

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 48

EpochSource = Callable[[str], Optional[int]]


class TokenCodec:
    """Compact HS256 JWT encoder/decoder with issuer and audience checks."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 30,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def encode(self, payload: dict[str, Any], ttl_seconds: int) -> str:
        claims = {
            **payload,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": str(uuid.uuid4()),
            "exp": int(time.time()) + int(ttl_seconds),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway_seconds:
            return None
        return payload


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    user_id: str = ""
    org_id: Optional[str] = None
    is_super: bool = False


class TokenService:
    """Issues, rotates and revokes session credentials.

    Refresh tokens are opaque and live only in the revocation store, indexed
    per organization so an org can be cut off in one step. Every non-super
    session is stamped with the org's ``auth_epoch``; rotation refuses a
    session whose stamp no longer matches.
    """

    def __init__(
        self,
        cache,
        codec: TokenCodec,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        epoch_source: Optional[EpochSource] = None,
    ) -> None:
        self.cache = cache
        self.codec = codec
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.epoch_source = epoch_source

    async def issue(
        self,
        user_id: str,
        org_id: Optional[str] = None,
        org_epoch: Optional[int] = None,
        is_super: bool = False,
    ) -> TokenPair:
        if is_super:
            org_id, org_epoch = None, None
        refresh_token = secrets.token_hex(REFRESH_TOKEN_BYTES)
        session = RefreshSession(
            token=refresh_token,
            user_id=user_id,
            org_id=org_id,
            org_epoch=org_epoch,
            is_super=is_super,
        )
        payload = session.to_payload()
        with backend_guard("issue"):
            await self.cache.store_refresh_session(
                refresh_token, payload, self.refresh_ttl_seconds
            )
        access_token = self.codec.encode(
            {"sub": user_id, **payload, "token_type": "access"},
            self.access_ttl_seconds,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
            user_id=user_id,
            org_id=org_id,
            is_super=is_super,
        )

    async def rotate(self, refresh_token: Optional[str]) -> TokenPair:
        if not refresh_token:
            raise ExpiredOrUnknownTokenError("refresh token expired or unknown")
        with backend_guard("rotate"):
            payload = await self.cache.get_refresh_session(refresh_token)
            if payload is None:
                raise ExpiredOrUnknownTokenError("refresh token expired or unknown")
            session = RefreshSession.from_payload(refresh_token, payload)
            current_epoch: Optional[int] = None
            if session.org_id and not session.is_super:
                if await self.cache.is_org_disabled(session.org_id):
                    await self.cache.delete_refresh_session(refresh_token)
                    logger.info("refresh_rejected", reason="org_disabled", org_id=session.org_id)
                    raise OrgRevokedError("organization access revoked")
                current_epoch = await self.current_epoch(session.org_id)
                if current_epoch is None or session.org_epoch != current_epoch:
                    await self.cache.delete_refresh_session(refresh_token)
                    logger.info(
                        "refresh_rejected",
                        reason="epoch_mismatch",
                        org_id=session.org_id,
                        token_epoch=session.org_epoch,
                        current_epoch=current_epoch,
                    )
                    raise OrgRevokedError("organization access revoked")
            # Loser of a concurrent redemption sees None here
            if await self.cache.consume_refresh_session(refresh_token) is None:
                raise ExpiredOrUnknownTokenError("refresh token expired or unknown")
        pair = await self.issue(
            session.user_id, session.org_id, current_epoch, session.is_super
        )
        logger.info("refresh_rotated", user_id=session.user_id, org_id=session.org_id)
        return pair

    async def current_epoch(self, org_id: str) -> Optional[int]:
        """Cached org epoch, falling back to the primary store on a miss."""
        with backend_guard("current_epoch"):
            epoch = await self.cache.get_org_epoch(org_id)
            if epoch is not None or self.epoch_source is None:
                return epoch
            epoch = self.epoch_source(org_id)
            if epoch is not None:
                await self.cache.set_org_epoch(org_id, epoch)
            return epoch

    async def revoke(self, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        with backend_guard("revoke"):
            return await self.cache.delete_refresh_session(refresh_token)

    async def revoke_all_for_org(self, org_id: str) -> int:
        with backend_guard("revoke_all_for_org"):
            removed = await self.cache.purge_org_sessions(org_id)
        logger.info("org_sessions_purged", org_id=org_id, removed=removed)
        return removed

    async def session(self, refresh_token: Optional[str]) -> Optional[RefreshSession]:
        if not refresh_token:
            return None
        with backend_guard("session"):
            payload = await self.cache.get_refresh_session(refresh_token)
        if payload is None:
            return None
        return RefreshSession.from_payload(refresh_token, payload)

    def verify_access(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        payload = self.codec.decode(token)
        if not payload or payload.get("token_type") != "access" or not payload.get("sub"):
            return None
        return payload

    async def set_org_epoch(self, org_id: str, epoch: Optional[int]) -> None:
        with backend_guard("set_org_epoch"):
            await self.cache.set_org_epoch(org_id, epoch)

    async def get_org_epoch(self, org_id: str) -> Optional[int]:
        with backend_guard("get_org_epoch"):
            return await self.cache.get_org_epoch(org_id)

    async def mark_org_disabled(self, org_id: str) -> None:
        with backend_guard("mark_org_disabled"):
            await self.cache.mark_org_disabled(org_id)

    async def mark_org_enabled(self, org_id: str) -> None:
        with backend_guard("mark_org_enabled"):
            await self.cache.mark_org_enabled(org_id)

    async def is_org_disabled(self, org_id: str) -> bool:
        with backend_guard("is_org_disabled"):
            return await self.cache.is_org_disabled(org_id)
