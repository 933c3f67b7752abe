from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from locally.core.config import GLOBAL_TENANT_ID, UNKNOWN_USER_ID, get_settings
from locally.core.diagnostics import ErrorKind
from locally.domain.security import SecurityLevel
from locally.persistence.db import SessionLocal
from locally.persistence.guards import TENANT_REQUIRED
from locally.persistence.repos import api_keys as api_keys_repo
from locally.persistence.repos import users as users_repo
from locally.services.auth.models import APIKeyCredentials, AuthCredentials, AuthType
from locally.services.auth.service import (
    API_KEY_EXPIRED,
    API_KEY_REVOKED,
    INVALID_API_KEY,
    INVALID_CREDENTIALS,
    INVALID_TENANT,
    INVALID_TOKEN,
    USER_BLOCKED,
    get_auth_service,
)
from locally.services.seed import seed_defaults
from locally.tests.utils.auth import (
    DEFAULT_PASSWORD,
    create_test_api_key,
    create_test_tenant,
    create_test_user,
)


async def _seed_root(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ROOT_USER_PASSWORD", "root-pw")
    get_settings.cache_clear()
    async with SessionLocal() as session:
        diag = await seed_defaults(session)
    assert not diag.has_errors(), diag.summary()


async def _password_login(username: str, password: str, tenant_id: str | None):
    async with SessionLocal() as session:
        response, diag = await get_auth_service().authenticate_with_password(
            session, AuthCredentials(username=username, password=password, tenant_id=tenant_id)
        )
        await session.commit()
    return response, diag


async def _api_key_login(raw_key: str, tenant_id: str | None = None):
    async with SessionLocal() as session:
        response, diag = await get_auth_service().authenticate_with_api_key(
            session, APIKeyCredentials(api_key=raw_key, tenant_id=tenant_id)
        )
        await session.commit()
    return response, diag


@pytest.mark.asyncio
async def test_root_login_with_empty_tenant_resolves_global(monkeypatch: pytest.MonkeyPatch) -> None:
    await _seed_root(monkeypatch)

    response, diag = await _password_login("root", "root-pw", "")

    assert not diag.has_errors(), diag.summary()
    assert response.token
    assert response.refresh_token
    claims, claims_diag = get_auth_service().validate_token(response.token)
    assert claims is not None, claims_diag.summary()
    assert claims.tenant_id == GLOBAL_TENANT_ID
    assert claims.security_level is SecurityLevel.SUPERUSER
    assert claims.auth_type is AuthType.PASSWORD
    assert claims.issuer == "locally"


@pytest.mark.asyncio
async def test_superuser_signs_in_to_any_tenant(monkeypatch: pytest.MonkeyPatch) -> None:
    await _seed_root(monkeypatch)
    tenant = await create_test_tenant("Acme")

    response, diag = await _password_login("root", "root-pw", "acme")

    assert not diag.has_errors(), diag.summary()
    claims, _ = get_auth_service().validate_token(response.token)
    assert claims is not None
    assert claims.tenant_id == tenant.id
    assert claims.is_superuser()


@pytest.mark.asyncio
async def test_password_login_for_tenant_user() -> None:
    tenant = await create_test_tenant("Acme")
    user, role = await create_test_user(tenant_id=tenant.id, security_level=SecurityLevel.ADMIN)

    response, diag = await _password_login("alice", DEFAULT_PASSWORD, tenant.id)

    assert not diag.has_errors(), diag.summary()
    claims, _ = get_auth_service().validate_token(f"Bearer {response.token}")
    assert claims is not None
    assert claims.user_id == user.id
    assert claims.security_level is SecurityLevel.ADMIN
    assert claims.roles == [role.slug]
    assert response.expires_at is not None


@pytest.mark.asyncio
async def test_wrong_password_returns_envelope_with_reason() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)

    response, diag = await _password_login("alice", "not-the-password", tenant.id)

    assert response.token == ""
    assert response.user_id == user.id
    assert response.username == "alice"
    assert diag.first_error().code == INVALID_CREDENTIALS
    assert "user_id" not in response.model_dump()


@pytest.mark.asyncio
async def test_unknown_user_and_tenant() -> None:
    await create_test_tenant("Acme")

    response, diag = await _password_login("ghost", DEFAULT_PASSWORD, "acme")
    assert diag.first_error().code == INVALID_CREDENTIALS
    assert response.user_id == UNKNOWN_USER_ID

    response, diag = await _password_login("ghost", DEFAULT_PASSWORD, "no-such-tenant")
    assert diag.first_error().code == INVALID_TENANT
    assert response.token == ""


@pytest.mark.asyncio
async def test_user_cannot_sign_in_to_other_tenant() -> None:
    acme = await create_test_tenant("Acme")
    await create_test_tenant("Globex")
    await create_test_user(tenant_id=acme.id)

    response, diag = await _password_login("alice", DEFAULT_PASSWORD, "globex")

    assert response.token == ""
    assert diag.first_error().code == INVALID_CREDENTIALS


@pytest.mark.asyncio
async def test_blocked_user_is_rejected() -> None:
    tenant = await create_test_tenant("Acme")
    await create_test_user(tenant_id=tenant.id, blocked=True)

    response, diag = await _password_login("alice", DEFAULT_PASSWORD, tenant.id)

    assert response.token == ""
    assert diag.first_error().code == USER_BLOCKED


@pytest.mark.asyncio
async def test_api_key_login_issues_access_token_only() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id, security_level=SecurityLevel.ADMIN)
    raw_key, api_key = await create_test_api_key(tenant_id=tenant.id, user_id=user.id)

    assert raw_key.startswith("sk-locally-")
    assert api_key.key_prefix == raw_key[: len("sk-locally-") + 8]

    response, diag = await _api_key_login(raw_key)

    assert not diag.has_errors(), diag.summary()
    assert response.token
    assert response.refresh_token == ""
    assert response.api_key_id == api_key.id
    claims, _ = get_auth_service().validate_token(response.token)
    assert claims is not None
    assert claims.auth_type is AuthType.API_KEY
    assert claims.api_key_id == api_key.id
    assert claims.tenant_id == tenant.id

    async with SessionLocal() as session:
        stored = await api_keys_repo.get_api_key(session, tenant_id=tenant.id, api_key_id=api_key.id)
        assert stored is not None
        assert stored.last_used_at is not None


@pytest.mark.asyncio
async def test_api_key_failures_keep_precise_reason() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    raw_key, api_key = await create_test_api_key(tenant_id=tenant.id, user_id=user.id)
    expired_raw, _ = await create_test_api_key(
        tenant_id=tenant.id,
        user_id=user.id,
        name="expired",
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
    )

    tampered = raw_key[:-1] + ("A" if raw_key[-1] != "A" else "B")
    _, diag = await _api_key_login(tampered)
    assert diag.first_error().code == INVALID_API_KEY

    _, diag = await _api_key_login("not-a-key")
    assert diag.first_error().code == INVALID_API_KEY

    _, diag = await _api_key_login(expired_raw)
    assert diag.first_error().code == API_KEY_EXPIRED

    async with SessionLocal() as session:
        stored = await api_keys_repo.get_api_key(session, tenant_id=tenant.id, api_key_id=api_key.id)
        await api_keys_repo.revoke_api_key(session, api_key=stored, revoked_by=user.id, reason="rotated")
        await session.commit()
    response, diag = await _api_key_login(raw_key)
    assert response.token == ""
    assert response.api_key_id == api_key.id
    assert diag.first_error().code == API_KEY_REVOKED


@pytest.mark.asyncio
async def test_api_key_cannot_cross_tenants() -> None:
    acme = await create_test_tenant("Acme")
    await create_test_tenant("Globex")
    user, _ = await create_test_user(tenant_id=acme.id)
    raw_key, _ = await create_test_api_key(tenant_id=acme.id, user_id=user.id)

    response, diag = await _api_key_login(raw_key, tenant_id="globex")

    assert response.token == ""
    assert diag.first_error().code == INVALID_TENANT


@pytest.mark.asyncio
async def test_refresh_issues_new_access_token() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    login, _ = await _password_login("alice", DEFAULT_PASSWORD, tenant.id)

    async with SessionLocal() as session:
        refreshed, diag = await get_auth_service().refresh_token(session, login.refresh_token)
        await session.commit()

    assert not diag.has_errors(), diag.summary()
    claims, _ = get_auth_service().validate_token(refreshed.token)
    assert claims is not None
    assert claims.user_id == user.id
    assert refreshed.refresh_token


@pytest.mark.asyncio
async def test_refresh_rejects_access_and_unknown_tokens() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    login, _ = await _password_login("alice", DEFAULT_PASSWORD, tenant.id)
    service = get_auth_service()

    async with SessionLocal() as session:
        response, diag = await service.refresh_token(session, login.token)
    assert response.token == ""
    assert diag.first_error().code == INVALID_TOKEN

    now = datetime.now(timezone.utc)
    forged = jwt.encode(
        {
            "username": "alice",
            "user_id": user.id,
            "tenant_id": tenant.id,
            "iss": service.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=1)).timestamp()),
            "typ": "refresh",
        },
        service.secret_key,
        algorithm="HS256",
    )
    async with SessionLocal() as session:
        response, diag = await service.refresh_token(session, forged)
    assert response.token == ""
    assert diag.first_error().code == INVALID_TOKEN


@pytest.mark.asyncio
async def test_validate_token_rejects_bad_tokens() -> None:
    tenant = await create_test_tenant("Acme")
    await create_test_user(tenant_id=tenant.id)
    login, _ = await _password_login("alice", DEFAULT_PASSWORD, tenant.id)
    service = get_auth_service()

    claims, diag = service.validate_token(login.refresh_token)
    assert claims is None
    assert diag.first_error().code == INVALID_TOKEN

    claims, _ = service.validate_token("")
    assert claims is None

    payload = jwt.decode(login.token, options={"verify_signature": False})
    wrong_secret = jwt.encode(payload, "another-secret-key-long-enough-for-hs256", algorithm="HS256")
    claims, _ = service.validate_token(wrong_secret)
    assert claims is None

    now = datetime.now(timezone.utc)
    expired = jwt.encode(
        {
            "username": "alice",
            "user_id": "u1",
            "tenant_id": tenant.id,
            "iss": service.issuer,
            "iat": int((now - timedelta(hours=2)).timestamp()),
            "exp": int((now - timedelta(hours=1)).timestamp()),
        },
        service.secret_key,
        algorithm="HS256",
    )
    claims, _ = service.validate_token(expired)
    assert claims is None

    missing_claims = jwt.encode(
        {"username": "alice", "exp": int((now + timedelta(hours=1)).timestamp())},
        service.secret_key,
        algorithm="HS256",
    )
    claims, _ = service.validate_token(missing_claims)
    assert claims is None


def _forged_refresh(*, tenant_id: str, user_id: str) -> str:
    service = get_auth_service()
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {
            "username": "alice",
            "user_id": user_id,
            "tenant_id": tenant_id,
            "iss": service.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=1)).timestamp()),
            "typ": "refresh",
        },
        service.secret_key,
        algorithm="HS256",
    )


@pytest.mark.asyncio
async def test_unusable_api_key_is_rejected_before_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    revoked_raw, revoked = await create_test_api_key(tenant_id=tenant.id, user_id=user.id, name="revoked")
    expired_raw, _ = await create_test_api_key(
        tenant_id=tenant.id,
        user_id=user.id,
        name="expired",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    async with SessionLocal() as session:
        stored = await api_keys_repo.get_api_key(session, tenant_id=tenant.id, api_key_id=revoked.id)
        await api_keys_repo.revoke_api_key(session, api_key=stored, revoked_by=user.id)
        await session.commit()

    verified: list[str] = []

    def _verify(raw_key: str, key_hash: str) -> bool:
        verified.append(raw_key)
        return True

    monkeypatch.setattr(api_keys_repo, "verify_api_key_hash", _verify)

    _, diag = await _api_key_login(revoked_raw)
    assert diag.first_error().code == API_KEY_REVOKED
    _, diag = await _api_key_login(expired_raw)
    assert diag.first_error().code == API_KEY_EXPIRED
    assert verified == []


@pytest.mark.asyncio
async def test_api_key_login_rejects_unknown_and_blank_tenants() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    raw_key, api_key = await create_test_api_key(tenant_id=tenant.id, user_id=user.id)

    response, diag = await _api_key_login(raw_key, tenant_id="nowhere")
    assert response.token == ""
    assert response.api_key_id == api_key.id
    assert diag.first_error().code == INVALID_TENANT
    assert diag.first_error().details == {"tenant_id": "nowhere"}

    # A blank tenant means the global tenant, which this key does not belong to.
    response, diag = await _api_key_login(raw_key, tenant_id="   ")
    assert response.token == ""
    assert diag.first_error().code == INVALID_TENANT

    response, diag = await _api_key_login(raw_key, tenant_id="acme")
    assert not diag.has_errors(), diag.summary()
    assert response.tenant_id == tenant.id


@pytest.mark.asyncio
async def test_refresh_rejects_blank_and_unknown_tenants() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    service = get_auth_service()

    async with SessionLocal() as session:
        response, diag = await service.refresh_token(session, _forged_refresh(tenant_id="", user_id=user.id))
    assert response.token == ""
    first = diag.first_error()
    assert first.code == TENANT_REQUIRED
    assert first.kind is ErrorKind.INPUT
    assert diag.path == ["get_user_by_id", "users"]

    async with SessionLocal() as session:
        response, diag = await service.refresh_token(session, _forged_refresh(tenant_id="gone", user_id=user.id))
    assert response.token == ""
    assert diag.first_error().code == INVALID_TENANT


@pytest.mark.asyncio
async def test_refresh_rejects_token_past_stored_expiry() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    login, _ = await _password_login("alice", DEFAULT_PASSWORD, tenant.id)
    assert login.refresh_token

    # The JWT itself is still valid; only the stored expiry has passed.
    async with SessionLocal() as session:
        stored = await users_repo.get_user_by_id(session, tenant_id=tenant.id, user_id=user.id)
        stored.refresh_token_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await session.commit()

    async with SessionLocal() as session:
        response, diag = await get_auth_service().refresh_token(session, login.refresh_token)
    assert response.token == ""
    assert response.user_id == user.id
    assert diag.first_error().code == INVALID_TOKEN
    assert diag.first_error().message == "refresh token has expired"
