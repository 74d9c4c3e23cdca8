from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
)
from pydantic import ValidationError as ClaimsValidationError

from airwave.config import Settings, parse_duration
from airwave.logging import get_logger
from airwave.service.errors import InvalidToken, ServerError, ServiceError, TokenExpired
from airwave.storage.common import CredentialStore
from airwave.storage.models import User
from airwave.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Tolerated clock drift between nodes for the not-before check only
NBF_LEEWAY_SECONDS = 5

ExtensionValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]


class _Claims(BaseModel):
    """Closed claim set shared by both token kinds.

    Unknown top-level claims are rejected; anything extra must go through the
    scalar-only ``extensions`` map.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    user_id: StrictStr = Field(alias="userId", min_length=1)
    session_id: StrictStr = Field(alias="sessionId", min_length=1)
    issued_at: Optional[StrictInt] = Field(default=None, alias="issuedAt")
    extensions: Dict[str, ExtensionValue] = Field(default_factory=dict)
    # Registered claims, present on decoded tokens only
    iss: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    iat: Optional[int] = None
    nbf: Optional[int] = None
    exp: Optional[int] = None
    jti: Optional[str] = None

    def private_claims(self) -> dict[str, Any]:
        payload = self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"iss", "aud", "iat", "nbf", "exp", "jti"},
        )
        if not payload.get("extensions"):
            payload.pop("extensions", None)
        return payload


class AccessClaims(_Claims):
    role: StrictStr = Field(min_length=1)
    email: StrictStr
    ip_address: Optional[StrictStr] = Field(default=None, alias="ipAddress")
    fingerprint: Optional[StrictStr] = None


class RefreshClaims(_Claims):
    pass


@dataclass
class RequestContext:
    """Request attributes recorded in the access token for audit only."""

    ip_address: Optional[str] = None
    fingerprint: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    token_type: str = "Bearer"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def refresh_index_key(token_hash: str) -> str:
    return f"refresh_token:{token_hash}"


def user_refresh_set_key(user_id: str) -> str:
    return f"user:{user_id}:refresh_tokens"


class TokenService:
    """Issues, verifies, refreshes and revokes access/refresh token pairs.

    Access tokens are verified by signature and expiry alone. Refresh tokens
    must additionally have their hash present in the key-value store, which
    makes deleting the index entry the only revocation mechanism. CSRF tokens
    are derived from the session id and never stored.
    """

    def __init__(
        self,
        settings: Settings,
        cache: RedisCache,
        store: CredentialStore,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.store = store
        self._access_secret = settings.jwt_access_secret.encode("utf-8")
        self._refresh_secret = settings.jwt_refresh_secret.encode("utf-8")
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds
        self.max_sessions = settings.max_sessions_per_user

    # -- JWT encoding -----------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes) -> dict[str, Any]:
        """Check signature, algorithm and time claims; return the raw payload.

        Raises ``TokenExpired`` only when the signature is valid and ``exp``
        has passed. Every other failure is ``InvalidToken``.
        """
        if not isinstance(token, str) or not token:
            raise InvalidToken("Token is missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken("Malformed token")

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidToken("Malformed token header")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidToken("Unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidToken("Invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken("Malformed token payload")
        if not isinstance(payload, dict):
            raise InvalidToken("Malformed token payload")

        now = time.time()
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise InvalidToken("Token has no expiry")
        if exp <= now:
            raise TokenExpired("Token has expired", detail={"expired_at": exp})
        nbf = payload.get("nbf")
        if nbf is not None:
            if not isinstance(nbf, (int, float)) or isinstance(nbf, bool):
                raise InvalidToken("Malformed not-before claim")
            if nbf > now + NBF_LEEWAY_SECONDS:
                raise InvalidToken("Token is not yet valid")
        if payload.get("iss") != self.settings.token_issuer:
            raise InvalidToken("Token issuer mismatch")
        aud = payload.get("aud")
        audience = self.settings.token_audience
        if isinstance(aud, str):
            valid_aud = aud == audience
        elif isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidToken("Token audience mismatch")
        return payload

    def _expiry_seconds(self, expires_in: Optional[Union[int, str]], default: int) -> int:
        if expires_in is None:
            return default
        if isinstance(expires_in, int) and not isinstance(expires_in, bool):
            # Raw seconds; negative values mint already-expired tokens
            return expires_in
        return parse_duration(expires_in)

    def _issue(
        self,
        claims: _Claims,
        secret: bytes,
        *,
        lifetime: int,
        audience: Optional[str],
        issuer: Optional[str],
    ) -> str:
        now = int(time.time())
        if claims.issued_at is None:
            claims = claims.model_copy(update={"issued_at": now})
        payload = claims.private_claims()
        payload.update(
            {
                "iss": issuer or self.settings.token_issuer,
                "aud": audience or self.settings.token_audience,
                "iat": now,
                "nbf": now,
                "exp": now + lifetime,
                "jti": secrets.token_hex(16),
            }
        )
        return self._encode_jwt(payload, secret)

    # -- issuance ---------------------------------------------------------

    def generate_access_token(
        self,
        claims: Union[AccessClaims, Mapping[str, Any]],
        *,
        expires_in: Optional[Union[int, str]] = None,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
    ) -> str:
        if not isinstance(claims, AccessClaims):
            claims = AccessClaims.model_validate(dict(claims))
        return self._issue(
            claims,
            self._access_secret,
            lifetime=self._expiry_seconds(expires_in, self.access_ttl),
            audience=audience,
            issuer=issuer,
        )

    def generate_refresh_token(
        self,
        claims: Union[RefreshClaims, Mapping[str, Any]],
        *,
        expires_in: Optional[Union[int, str]] = None,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
    ) -> str:
        if not isinstance(claims, RefreshClaims):
            claims = RefreshClaims.model_validate(dict(claims))
        return self._issue(
            claims,
            self._refresh_secret,
            lifetime=self._expiry_seconds(expires_in, self.refresh_ttl),
            audience=audience,
            issuer=issuer,
        )

    def _access_claims_for(
        self,
        user: User,
        session_id: str,
        request_context: Optional[RequestContext],
    ) -> AccessClaims:
        return AccessClaims(
            user_id=user.id,
            role=user.role or "viewer",
            email=user.email,
            session_id=session_id,
            issued_at=int(time.time()),
            ip_address=request_context.ip_address if request_context else None,
            fingerprint=request_context.fingerprint if request_context else None,
        )

    async def generate_token_pair(
        self, user: User, request_context: Optional[RequestContext] = None
    ) -> TokenPair:
        session_id = secrets.token_hex(32)
        access_token = self.generate_access_token(
            self._access_claims_for(user, session_id, request_context)
        )
        refresh_token = self.generate_refresh_token(
            RefreshClaims(user_id=user.id, session_id=session_id)
        )
        await self._store_refresh_token(refresh_token, user.id, session_id)
        logger.info(
            "token_pair_issued",
            user_id=user.id,
            session_id=session_id,
            ip_address=request_context.ip_address if request_context else None,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            session_id=session_id,
        )

    # -- refresh-token index ----------------------------------------------

    async def _live_sessions(self, user_id: str) -> list[tuple[str, dict]]:
        """Return ``(hash, entry)`` for tracked tokens, oldest first.

        Members whose index entry has already expired are pruned from the
        user's set as a side effect.
        """
        set_key = user_refresh_set_key(user_id)
        members = await self.cache.smembers(set_key)
        live: list[tuple[str, dict]] = []
        stale: list[str] = []
        for token_hash in members:
            entry = await self.cache.get_json(refresh_index_key(token_hash))
            if isinstance(entry, dict):
                live.append((token_hash, entry))
            else:
                stale.append(token_hash)
        if stale:
            await self.cache.srem(set_key, *stale)
        live.sort(key=lambda item: (float(item[1].get("createdAt") or 0), item[0]))
        return live

    async def _enforce_session_cap(self, user_id: str) -> None:
        live = await self._live_sessions(user_id)
        overflow = len(live) - self.max_sessions + 1
        if overflow <= 0:
            return
        # FIFO by creation time; last use is not tracked
        for token_hash, entry in live[:overflow]:
            await self.cache.delete(refresh_index_key(token_hash))
            await self.cache.srem(user_refresh_set_key(user_id), token_hash)
            logger.info(
                "refresh_token_evicted",
                user_id=user_id,
                session_id=entry.get("sessionId"),
            )

    async def _store_refresh_token(
        self, refresh_token: str, user_id: str, session_id: str
    ) -> None:
        await self._enforce_session_cap(user_id)
        entry = {"userId": user_id, "sessionId": session_id, "createdAt": time.time()}
        stored = await self.cache.cache_refresh_token(
            hash_token(refresh_token), entry, user_id, self.refresh_ttl
        )
        if not stored:
            # Login still succeeds; revocation is best-effort while the store is down
            logger.warning("refresh_token_store_failed", user_id=user_id, session_id=session_id)

    async def list_user_sessions(self, user_id: str) -> list[dict[str, Any]]:
        return [
            {"session_id": entry.get("sessionId"), "created_at": entry.get("createdAt")}
            for _, entry in await self._live_sessions(user_id)
        ]

    # -- verification -----------------------------------------------------

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token, self._access_secret)
        try:
            return AccessClaims.model_validate(payload)
        except ClaimsValidationError:
            raise InvalidToken("Malformed token claims")

    def _decode_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode_jwt(token, self._refresh_secret)
        try:
            return RefreshClaims.model_validate(payload)
        except ClaimsValidationError:
            raise InvalidToken("Malformed token claims")

    async def verify_refresh_token(self, token: str) -> RefreshClaims:
        claims = self._decode_refresh(token)
        entry = await self.cache.get_json(refresh_index_key(hash_token(token)))
        if not isinstance(entry, dict):
            raise InvalidToken("Refresh token has been revoked")
        if entry.get("userId") != claims.user_id or entry.get("sessionId") != claims.session_id:
            logger.warning("refresh_index_mismatch", user_id=claims.user_id)
            raise InvalidToken("Refresh token has been revoked")
        return claims

    async def refresh_access_token(
        self, refresh_token: str, request_context: Optional[RequestContext] = None
    ) -> TokenPair:
        claims = await self.verify_refresh_token(refresh_token)
        try:
            user = self.store.get_user(claims.user_id)
        except Exception as exc:
            logger.error("refresh_user_lookup_failed", user_id=claims.user_id, error=str(exc))
            raise ServerError("Failed to refresh token")
        if not user:
            raise InvalidToken("User not found")
        if not user.is_active:
            raise InvalidToken("User account is disabled")

        access_token = self.generate_access_token(
            self._access_claims_for(user, claims.session_id, request_context)
        )
        new_refresh = refresh_token
        if self.settings.refresh_token_rotation:
            new_refresh = self.generate_refresh_token(
                RefreshClaims(user_id=user.id, session_id=claims.session_id)
            )
            await self.revoke_refresh_token(refresh_token)
            await self._store_refresh_token(new_refresh, user.id, claims.session_id)
        logger.info(
            "access_token_refreshed",
            user_id=user.id,
            session_id=claims.session_id,
            rotated=new_refresh != refresh_token,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            expires_in=self.access_ttl,
            session_id=claims.session_id,
        )

    # -- revocation -------------------------------------------------------

    async def revoke_refresh_token(self, token: str) -> bool:
        """Best-effort removal of one refresh token; bad tokens are ignored."""
        try:
            claims = self._decode_refresh(token)
        except ServiceError as exc:
            logger.info("refresh_revoke_ignored", reason=exc.error_code)
            return False
        token_hash = hash_token(token)
        removed = await self.cache.delete(refresh_index_key(token_hash))
        await self.cache.srem(user_refresh_set_key(claims.user_id), token_hash)
        logger.info(
            "refresh_token_revoked",
            user_id=claims.user_id,
            session_id=claims.session_id,
            found=bool(removed),
        )
        return bool(removed)

    async def revoke_all_user_tokens(self, user_id: str) -> int:
        set_key = user_refresh_set_key(user_id)
        members = await self.cache.smembers(set_key)
        revoked = 0
        if members:
            revoked = await self.cache.delete(
                *(refresh_index_key(token_hash) for token_hash in members)
            )
        await self.cache.delete(set_key)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, revoked=revoked)
        return revoked

    # -- CSRF -------------------------------------------------------------

    def generate_csrf_token(self, session_id: str) -> str:
        return hmac.new(
            self._access_secret, session_id.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def validate_csrf_token(self, token: Any, session_id: Any) -> bool:
        if not isinstance(token, str) or not isinstance(session_id, str):
            return False
        if not token or not session_id:
            return False
        expected = self.generate_csrf_token(session_id)
        return hmac.compare_digest(expected.encode(), token.encode("utf-8"))
