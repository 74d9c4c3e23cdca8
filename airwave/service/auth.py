from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from airwave.logging import get_logger
from airwave.service.errors import (
    AuthenticationRequired,
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    ServiceError,
)
from airwave.service.tokens import (
    RequestContext,
    TokenPair,
    TokenService,
    hash_token,
)
from airwave.storage.common import CredentialStore
from airwave.storage.models import User
from airwave.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


@dataclass
class Principal:
    """Verified identity attached to a single request; never persisted."""

    user_id: str
    email: str
    role: str
    session_id: str
    issued_at: int
    expires_at: Optional[int] = None
    ip_address: Optional[str] = None
    fingerprint: Optional[str] = None


@dataclass
class VerificationResult:
    principal: Optional[Principal] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.principal is not None


class AccessTokenVerifier(Protocol):
    name: str

    async def verify(self, token: str) -> VerificationResult: ...


class JWTAccessVerifier:
    """Verifies first-party access tokens issued by :class:`TokenService`."""

    name = "jwt"

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    async def verify(self, token: str) -> VerificationResult:
        try:
            claims = self.tokens.verify_access_token(token)
        except ServiceError as exc:
            return VerificationResult(error=exc)
        return VerificationResult(
            principal=Principal(
                user_id=claims.user_id,
                email=claims.email,
                role=claims.role,
                session_id=claims.session_id,
                issued_at=claims.issued_at or claims.iat or 0,
                expires_at=claims.exp,
                ip_address=claims.ip_address,
                fingerprint=claims.fingerprint,
            )
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


class Authenticator:
    """Request-boundary authentication built on an ordered verifier chain.

    Verifiers are tried in order and the first success wins. When all of
    them fail, the first verifier's error is raised so that the primary
    token kind decides between ``TokenExpired`` and ``InvalidToken``.
    """

    def __init__(
        self,
        tokens: TokenService,
        store: CredentialStore,
        cache: RedisCache,
        *,
        verifiers: Optional[Sequence[AccessTokenVerifier]] = None,
    ) -> None:
        self.tokens = tokens
        self.store = store
        self.cache = cache
        self.verifiers: list[AccessTokenVerifier] = list(
            verifiers or [JWTAccessVerifier(tokens)]
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    async def authenticate(
        self, token: Optional[str], *, client_ip: Optional[str] = None
    ) -> Principal:
        if not token:
            raise AuthenticationRequired()
        principal: Optional[Principal] = None
        first_error: Optional[ServiceError] = None
        for verifier in self.verifiers:
            result = await verifier.verify(token)
            if result.ok:
                principal = result.principal
                break
            if first_error is None:
                first_error = result.error
        if principal is None:
            raise first_error or InvalidToken()

        # Fails open when the store is down: the adapter reports "not present"
        if await self.cache.is_access_token_denylisted(hash_token(token)):
            raise InvalidToken("Token has been revoked")

        if client_ip and principal.ip_address and client_ip != principal.ip_address:
            # Soft binding only; rotating client IPs are expected
            logger.info(
                "principal_ip_mismatch",
                user_id=principal.user_id,
                session_id=principal.session_id,
                token_ip=principal.ip_address,
                request_ip=client_ip,
            )
        return principal

    def issue_csrf_token(self, principal: Principal) -> str:
        return self.tokens.generate_csrf_token(principal.session_id)

    def check_csrf(self, principal: Principal, csrf_token: Optional[str]) -> None:
        if not csrf_token:
            raise Forbidden("CSRF token missing")
        if not self.tokens.validate_csrf_token(csrf_token, principal.session_id):
            logger.warning(
                "csrf_validation_failed",
                user_id=principal.user_id,
                session_id=principal.session_id,
            )
            raise Forbidden("CSRF token does not match session")

    # -- password login ---------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def register(
        self, email: str, password: str, *, role: str = "viewer", name: Optional[str] = None
    ) -> User:
        user = self.store.create_user(email, role=role, name=name)
        self.save_password(user.id, password)
        logger.info("user_registered", user_id=user.id, role=role)
        return user

    async def login(
        self,
        email: str,
        password: str,
        request_context: Optional[RequestContext] = None,
    ) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            raise InvalidCredentials("Invalid email or password")
        if not user.is_active:
            raise InvalidCredentials("Account is disabled")
        pair = await self.tokens.generate_token_pair(user, request_context)
        logger.info("user_logged_in", user_id=user.id, session_id=pair.session_id)
        return user, pair

    # -- logout -----------------------------------------------------------

    async def logout(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        """Deny the access token for its remaining life and drop the refresh token.

        Both halves are best effort; an already-invalid token is skipped.
        """
        if access_token:
            try:
                claims = self.tokens.verify_access_token(access_token)
            except ServiceError as exc:
                logger.info("logout_access_token_skipped", reason=exc.error_code)
            else:
                ttl = int((claims.exp or 0) - time.time()) + 1
                await self.cache.denylist_access_token(hash_token(access_token), ttl)
                logger.info(
                    "access_token_denylisted",
                    user_id=claims.user_id,
                    session_id=claims.session_id,
                )
        if refresh_token:
            await self.tokens.revoke_refresh_token(refresh_token)
