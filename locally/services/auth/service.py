from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import Any

import jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.config import (
    GLOBAL_TENANT_ID,
    GLOBAL_TENANT_SLUG,
    UNKNOWN_USER_ID,
    get_settings,
)
from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.core.errors import ConfigurationError
from locally.domain.models import ApiKey, Role, User
from locally.domain.security import SecurityLevel, highest_level
from locally.persistence.guards import TenantPredicateError
from locally.persistence.repos import api_keys as api_keys_repo
from locally.persistence.repos import tenants as tenants_repo
from locally.persistence.repos import users as users_repo
from locally.services.auth.api_keys import generate_api_key, lookup_prefix
from locally.services.auth.models import (
    APIKeyCredentials,
    AuthClaims,
    AuthCredentials,
    AuthType,
    TokenResponse,
)
from locally.services.crypto.encryption import get_encryption_service


logger = logging.getLogger(__name__)

_COMPONENT = "auth_service"
_REQUIRED_CLAIMS = ["username", "user_id", "iss", "tenant_id", "iat", "exp"]
_REFRESH_TYPE = "refresh"

# Precise failure codes; routes expose only a uniform message.
INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
INVALID_API_KEY = "INVALID_API_KEY"
API_KEY_REVOKED = "API_KEY_REVOKED"
API_KEY_EXPIRED = "API_KEY_EXPIRED"
USER_BLOCKED = "USER_BLOCKED"
INVALID_TENANT = "INVALID_TENANT"
INVALID_TOKEN = "INVALID_TOKEN"
USER_NOT_FOUND = "USER_NOT_FOUND"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _is_superuser(roles: list[Role]) -> bool:
    return highest_level(role.security_level for role in roles) is SecurityLevel.SUPERUSER


def _security_level(roles: list[Role]) -> SecurityLevel:
    if not roles:
        return SecurityLevel.GUEST
    return highest_level(role.security_level for role in roles)


def _failure(
    diag: Diagnostics,
    code: str,
    message: str,
    *,
    tenant_id: str | None,
    username: str | None,
    user_id: str | None = None,
    api_key_id: str | None = None,
    kind: ErrorKind = ErrorKind.AUTH,
) -> tuple[TokenResponse, Diagnostics]:
    # Keep the most precise reason when a sub-operation already recorded one.
    if not diag.has_errors():
        diag.add_error(code, message, _COMPONENT, {"tenant_id": tenant_id, "username": username}, kind=kind)
    envelope = TokenResponse(
        tenant_id=tenant_id,
        user_id=user_id or UNKNOWN_USER_ID,
        username=username,
        api_key_id=api_key_id,
        error=diag.errors[0].message,
    )
    return envelope, diag


class AuthService:
    """Credential and API-key authentication plus JWT issue, validate and refresh.

    Every public operation returns its result together with a ``Diagnostics``
    value. Failed authentications still return a ``TokenResponse`` envelope
    with an empty token that carries the identity the caller claimed and the
    precise reason, for audit logging.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        issuer: str,
        token_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(hours=24),
        api_key_prefix: str = "sk-locally-",
    ) -> None:
        if not secret_key:
            raise ConfigurationError("auth secret key is required")
        if not issuer:
            raise ConfigurationError("auth issuer is required")
        self.secret_key = secret_key
        self.issuer = issuer
        self.token_ttl = token_ttl
        self.refresh_ttl = refresh_ttl
        self.api_key_prefix = api_key_prefix

    async def _resolve_tenant(
        self,
        session: AsyncSession,
        diag: Diagnostics,
        tenant_id: str | None,
    ) -> str | None:
        # Empty means the global tenant; ids and slugs resolve to the concrete id.
        requested = (tenant_id or "").strip() or GLOBAL_TENANT_SLUG
        tenant = await tenants_repo.get_tenant_by_id_or_slug(session, requested)
        if tenant is None:
            if requested in (GLOBAL_TENANT_SLUG, GLOBAL_TENANT_ID):
                return GLOBAL_TENANT_ID
            diag.add_error(
                INVALID_TENANT,
                f"tenant '{requested}' does not exist",
                _COMPONENT,
                {"tenant_id": requested},
                kind=ErrorKind.AUTH,
            )
            return None
        return tenant.id

    async def _load_principal(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        username: str,
    ) -> tuple[User | None, list[Role]]:
        user = await users_repo.get_user_by_username(session, tenant_id=tenant_id, username=username)
        if user is None and tenant_id != GLOBAL_TENANT_ID:
            # Superusers live in the global tenant and may sign in to any tenant.
            user = await users_repo.get_user_by_username(session, tenant_id=GLOBAL_TENANT_ID, username=username)
        if user is None:
            return None, []
        return user, await users_repo.get_user_roles(session, user_id=user.id)

    async def authenticate_with_password(
        self,
        session: AsyncSession,
        credentials: AuthCredentials,
    ) -> tuple[TokenResponse, Diagnostics]:
        diag = Diagnostics("authenticate_with_password")
        tenant_id = await self._resolve_tenant(session, diag, credentials.tenant_id)
        if tenant_id is None:
            return _failure(diag, INVALID_TENANT, "invalid tenant", tenant_id=credentials.tenant_id, username=credentials.username)

        user, roles = await self._load_principal(session, tenant_id=tenant_id, username=credentials.username)
        if user is None:
            return _failure(diag, INVALID_CREDENTIALS, "invalid credentials", tenant_id=tenant_id, username=credentials.username)
        if not get_encryption_service().verify_password(credentials.password, user.password_hash):
            return _failure(
                diag,
                INVALID_CREDENTIALS,
                "invalid credentials",
                tenant_id=tenant_id,
                username=credentials.username,
                user_id=user.id,
            )
        if user.blocked:
            return _failure(diag, USER_BLOCKED, "user is blocked", tenant_id=tenant_id, username=user.username, user_id=user.id)
        if user.tenant_id != tenant_id and not _is_superuser(roles):
            return _failure(
                diag,
                INVALID_TENANT,
                "user does not belong to tenant",
                tenant_id=tenant_id,
                username=user.username,
                user_id=user.id,
            )

        response, token_diag = await self.generate_token(
            session,
            user=user,
            roles=roles,
            tenant_id=tenant_id,
            auth_type=AuthType.PASSWORD,
        )
        diag.append(token_diag)
        return response, diag

    async def validate_api_key(
        self,
        session: AsyncSession,
        raw_key: str,
    ) -> tuple[ApiKey | None, Diagnostics]:
        """Resolve a presented secret to its stored record.

        The lookup prefix narrows the search to one row. Revocation and expiry
        are settled from the row before bcrypt verifies the full secret, which
        also settles collisions on the 8-character prefix.
        """
        diag = Diagnostics("validate_api_key")
        prefix = lookup_prefix(raw_key, self.api_key_prefix)
        if prefix is None:
            diag.add_error(INVALID_API_KEY, "malformed api key", _COMPONENT, kind=ErrorKind.AUTH)
            return None, diag
        api_key = await api_keys_repo.find_api_key_by_prefix(session, prefix)
        if api_key is None:
            diag.add_error(INVALID_API_KEY, "api key not found", _COMPONENT, {"key_prefix": prefix}, kind=ErrorKind.AUTH)
            return None, diag
        if api_keys_repo.is_revoked(api_key):
            diag.add_error(API_KEY_REVOKED, "api key has been revoked", _COMPONENT, {"api_key_id": api_key.id}, kind=ErrorKind.AUTH)
            return api_key, diag
        expires_at = _as_utc(api_key.expires_at)
        if expires_at is not None and expires_at < _utc_now():
            diag.add_error(API_KEY_EXPIRED, "api key has expired", _COMPONENT, {"api_key_id": api_key.id}, kind=ErrorKind.AUTH)
            return api_key, diag
        if not api_keys_repo.verify_api_key_hash(raw_key, api_key.key_hash):
            diag.add_error(INVALID_API_KEY, "api key hash mismatch", _COMPONENT, {"api_key_id": api_key.id}, kind=ErrorKind.AUTH)
            return api_key, diag
        return api_key, diag

    async def update_api_key_last_used(self, session: AsyncSession, api_key_id: str) -> None:
        # Bookkeeping only; a failed write never fails authentication.
        try:
            await api_keys_repo.update_api_key_last_used(session, api_key_id=api_key_id)
        except SQLAlchemyError as exc:
            logger.warning("api_key_last_used_update_failed api_key_id=%s", api_key_id, exc_info=exc)

    async def authenticate_with_api_key(
        self,
        session: AsyncSession,
        credentials: APIKeyCredentials,
    ) -> tuple[TokenResponse, Diagnostics]:
        diag = Diagnostics("authenticate_with_api_key")
        api_key, key_diag = await self.validate_api_key(session, credentials.api_key)
        diag.append(key_diag)
        api_key_id = api_key.id if api_key is not None else None
        if api_key is None or key_diag.has_errors():
            first = key_diag.first_error()
            code = first.code if first else INVALID_API_KEY
            return _failure(diag, code, "invalid api key", tenant_id=credentials.tenant_id, username=None, api_key_id=api_key_id)

        # Without a tenant the key signs in to the tenant that owns it; a blank one means global.
        if credentials.tenant_id is None:
            tenant_id: str | None = api_key.tenant_id
        else:
            tenant_id = await self._resolve_tenant(session, diag, credentials.tenant_id)
        if tenant_id is None:
            return _failure(diag, INVALID_TENANT, "invalid tenant", tenant_id=credentials.tenant_id, username=None, api_key_id=api_key_id)

        user, _ = await self.get_user_by_id(session, tenant_id=api_key.tenant_id, user_id=api_key.user_id)
        if user is None:
            return _failure(diag, INVALID_API_KEY, "api key owner not found", tenant_id=tenant_id, username=None, api_key_id=api_key_id)
        roles = await users_repo.get_user_roles(session, user_id=user.id)
        if user.blocked:
            return _failure(
                diag,
                USER_BLOCKED,
                "user is blocked",
                tenant_id=tenant_id,
                username=user.username,
                user_id=user.id,
                api_key_id=api_key_id,
            )
        if api_key.tenant_id != tenant_id and not _is_superuser(roles):
            return _failure(
                diag,
                INVALID_TENANT,
                "api key does not belong to tenant",
                tenant_id=tenant_id,
                username=user.username,
                user_id=user.id,
                api_key_id=api_key_id,
            )

        await self.update_api_key_last_used(session, api_key.id)
        response, token_diag = await self.generate_token(
            session,
            user=user,
            roles=roles,
            tenant_id=tenant_id,
            auth_type=AuthType.API_KEY,
            api_key_id=api_key.id,
        )
        diag.append(token_diag)
        return response, diag

    async def generate_token(
        self,
        session: AsyncSession,
        *,
        user: User,
        roles: list[Role],
        tenant_id: str,
        auth_type: AuthType,
        api_key_id: str | None = None,
    ) -> tuple[TokenResponse, Diagnostics]:
        """Sign an access token and, for password logins, a persisted refresh token."""
        diag = Diagnostics("generate_token")
        now = _utc_now()
        expires_at = now + self.token_ttl
        payload: dict[str, Any] = {
            "username": user.username,
            "user_id": user.id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "roles": [role.slug for role in roles],
            "tenant_id": tenant_id,
            "auth_type": auth_type.value,
            "security_level": _security_level(roles).value,
        }
        if api_key_id is not None:
            payload["api_key_id"] = api_key_id
        token = jwt.encode(payload, self.secret_key, algorithm="HS256")

        refresh_token = ""
        if auth_type is AuthType.PASSWORD:
            refresh_expires_at = expires_at + self.refresh_ttl
            refresh_payload = {
                "username": user.username,
                "user_id": user.id,
                "iat": int(now.timestamp()),
                "exp": int(refresh_expires_at.timestamp()),
                "iss": self.issuer,
                "tenant_id": tenant_id,
                "auth_type": auth_type.value,
                "typ": _REFRESH_TYPE,
            }
            refresh_token = jwt.encode(refresh_payload, self.secret_key, algorithm="HS256")
            await users_repo.set_refresh_token(
                session,
                tenant_id=user.tenant_id,
                user_id=user.id,
                token=refresh_token,
                expires_at=refresh_expires_at,
            )

        response = TokenResponse(
            token=token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            tenant_id=tenant_id,
            user_id=user.id,
            username=user.username,
            api_key_id=api_key_id,
        )
        return response, diag

    def _decode(self, token: str) -> dict[str, Any]:
        header = jwt.get_unverified_header(token)
        algorithm = str(header.get("alg", ""))
        # Only the HMAC family is accepted; "none" and asymmetric algorithms are rejected.
        if not algorithm.startswith("HS"):
            raise jwt.InvalidAlgorithmError(f"unexpected signing method: {algorithm}")
        return jwt.decode(
            token,
            self.secret_key,
            algorithms=[algorithm],
            issuer=self.issuer,
            options={"require": _REQUIRED_CLAIMS},
        )

    def validate_token(self, token: str) -> tuple[AuthClaims | None, Diagnostics]:
        diag = Diagnostics("validate_token")
        token = token.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        if not token:
            diag.add_error(INVALID_TOKEN, "token is missing", _COMPONENT, kind=ErrorKind.AUTH)
            return None, diag
        try:
            payload = self._decode(token)
        except jwt.PyJWTError as exc:
            diag.add_error(INVALID_TOKEN, f"invalid token: {exc}", _COMPONENT, kind=ErrorKind.AUTH)
            return None, diag
        if payload.get("typ") == _REFRESH_TYPE:
            diag.add_error(INVALID_TOKEN, "refresh tokens cannot authorize requests", _COMPONENT, kind=ErrorKind.AUTH)
            return None, diag
        try:
            claims = AuthClaims(
                username=str(payload["username"]),
                user_id=str(payload["user_id"]),
                tenant_id=str(payload["tenant_id"]),
                issuer=str(payload["iss"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                auth_type=AuthType(payload.get("auth_type") or AuthType.PASSWORD.value),
                security_level=payload.get("security_level") or SecurityLevel.NONE,
                roles=[str(role) for role in payload.get("roles") or []],
                api_key_id=payload.get("api_key_id"),
            )
        except (TypeError, ValueError) as exc:
            diag.add_error(INVALID_TOKEN, f"invalid token claims: {exc}", _COMPONENT, kind=ErrorKind.AUTH)
            return None, diag
        return claims, diag

    async def get_user_by_id(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user_id: str,
    ) -> tuple[User | None, Diagnostics]:
        diag = Diagnostics("get_user_by_id")
        try:
            user = await users_repo.get_user_by_id(session, tenant_id=tenant_id, user_id=user_id)
        except TenantPredicateError as exc:
            diag.append(exc.diagnostics)
            return None, diag
        if user is None and tenant_id != GLOBAL_TENANT_ID:
            user = await users_repo.get_user_by_id(session, tenant_id=GLOBAL_TENANT_ID, user_id=user_id)
        if user is None:
            diag.add_error(
                USER_NOT_FOUND,
                "user not found",
                _COMPONENT,
                {"tenant_id": tenant_id, "user_id": user_id},
                kind=ErrorKind.NOT_FOUND,
            )
        return user, diag

    async def refresh_token(
        self,
        session: AsyncSession,
        refresh_token: str,
    ) -> tuple[TokenResponse, Diagnostics]:
        diag = Diagnostics("refresh_token")
        refresh_token = refresh_token.strip()
        if refresh_token.lower().startswith("bearer "):
            refresh_token = refresh_token[7:].strip()
        try:
            payload = self._decode(refresh_token)
        except jwt.PyJWTError as exc:
            return _failure(diag, INVALID_TOKEN, f"invalid refresh token: {exc}", tenant_id=None, username=None)
        if payload.get("typ") != _REFRESH_TYPE:
            return _failure(diag, INVALID_TOKEN, "not a refresh token", tenant_id=None, username=None)

        tenant_id = str(payload["tenant_id"])
        user_id = str(payload["user_id"])
        username = str(payload["username"])
        # Blank tenants are refused by the user lookup itself.
        if tenant_id.strip() and tenant_id != GLOBAL_TENANT_ID:
            if await tenants_repo.get_tenant_by_id_or_slug(session, tenant_id) is None:
                return _failure(diag, INVALID_TENANT, f"tenant '{tenant_id}' does not exist", tenant_id=tenant_id, username=username)
        user, user_diag = await self.get_user_by_id(session, tenant_id=tenant_id, user_id=user_id)
        diag.append(user_diag)
        if user is None:
            return _failure(diag, USER_NOT_FOUND, "user not found", tenant_id=tenant_id, username=username, kind=ErrorKind.NOT_FOUND)
        if user.refresh_token != refresh_token:
            return _failure(diag, INVALID_TOKEN, "refresh token does not match", tenant_id=tenant_id, username=username, user_id=user.id)
        refresh_expires_at = _as_utc(user.refresh_token_expires_at)
        if refresh_expires_at is None or refresh_expires_at <= _utc_now():
            return _failure(diag, INVALID_TOKEN, "refresh token has expired", tenant_id=tenant_id, username=username, user_id=user.id)
        if user.blocked:
            return _failure(diag, USER_BLOCKED, "user is blocked", tenant_id=tenant_id, username=username, user_id=user.id)
        roles = await users_repo.get_user_roles(session, user_id=user.id)
        if user.tenant_id != tenant_id and not _is_superuser(roles):
            return _failure(diag, INVALID_TENANT, "user does not belong to tenant", tenant_id=tenant_id, username=username, user_id=user.id)

        response, token_diag = await self.generate_token(
            session,
            user=user,
            roles=roles,
            tenant_id=tenant_id,
            auth_type=AuthType.PASSWORD,
        )
        diag.append(token_diag)
        return response, diag

    def generate_secure_api_key(self) -> str:
        return generate_api_key(self.api_key_prefix)


_service: AuthService | None = None
_service_lock = threading.Lock()


def get_auth_service() -> AuthService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                settings = get_settings()
                _service = AuthService(
                    secret_key=settings.auth_secret_key,
                    issuer=settings.auth_issuer,
                    token_ttl=timedelta(hours=settings.auth_token_ttl_hours),
                    refresh_ttl=timedelta(hours=settings.auth_refresh_ttl_hours),
                    api_key_prefix=settings.auth_api_key_prefix,
                )
    return _service


def reset_auth_service() -> None:
    global _service
    with _service_lock:
        _service = None
