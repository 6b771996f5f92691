# tests/test_sessions.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, update

from grimoire.core.errors import Conflict, StoreUnavailable, Unauthorized
from grimoire.core.tokens import Principal
from grimoire.db.models import RefreshToken, User

from _helpers import PASSWORD

EMAIL = "a@b.com"


def _principal(user):
    return Principal(id=user.id, email=user.email, role=user.role)


@pytest.mark.asyncio
async def test_register_issues_pair_and_persists_record(services):
    result = await services.sessions.register(" A@B.com ", PASSWORD)
    assert result.user.email == EMAIL

    claims = services.issuer.verify_refresh(result.refresh_token)
    assert claims.subject_id == result.user.id
    assert await services.store.is_active(claims.token_id)
    assert services.issuer.verify_access(result.access_token).email == EMAIL


@pytest.mark.asyncio
async def test_register_duplicate_conflicts(services):
    await services.sessions.register(EMAIL, PASSWORD)
    with pytest.raises(Conflict):
        await services.sessions.register("a@B.COM", PASSWORD)


@pytest.mark.asyncio
async def test_login_failures_share_message(services):
    await services.sessions.register(EMAIL, PASSWORD)

    with pytest.raises(Unauthorized) as wrong_pw:
        await services.sessions.login(EMAIL, "wrong-password")
    with pytest.raises(Unauthorized) as unknown:
        await services.sessions.login("nobody@b.com", PASSWORD)
    assert str(wrong_pw.value) == str(unknown.value) == "Invalid credentials"

    ok = await services.sessions.login(EMAIL, PASSWORD)
    assert ok.refresh_token


@pytest.mark.asyncio
async def test_refresh_is_single_use(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)

    pair = await services.sessions.refresh(reg.refresh_token)
    assert pair.refresh_token != reg.refresh_token

    with pytest.raises(Unauthorized):
        await services.sessions.refresh(reg.refresh_token)
    # el hijo sigue vivo
    again = await services.sessions.refresh(pair.refresh_token)
    assert again.refresh_token != pair.refresh_token


@pytest.mark.asyncio
async def test_concurrent_refresh_exactly_one_succeeds(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)

    results = await asyncio.gather(
        *(services.sessions.refresh(reg.refresh_token) for _ in range(4)),
        return_exceptions=True,
    )

    ok = [r for r in results if not isinstance(r, BaseException)]
    failed = [r for r in results if isinstance(r, BaseException)]
    assert len(ok) == 1
    assert len(failed) == 3
    assert all(isinstance(e, Unauthorized) for e in failed)

    # un único hijo en la cadena
    rows = await services.store.list_by_user(reg.user.id)
    assert len(rows) == 2
    assert sum(r.revoked_at is None for r in rows) == 1


@pytest.mark.asyncio
async def test_rotation_chain_points_to_child(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    old = services.issuer.verify_refresh(reg.refresh_token).token_id

    pair = await services.sessions.refresh(reg.refresh_token)
    new = services.issuer.verify_refresh(pair.refresh_token).token_id

    async with services.sessionmaker() as s:
        rec = await s.get(RefreshToken, old)
    assert rec.replaced_by_token_id == new
    assert rec.revoked_at is not None


@pytest.mark.asyncio
async def test_logout_all_revokes_every_unrotated_refresh(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    second = await services.sessions.login(EMAIL, PASSWORD)
    third = await services.sessions.login(EMAIL, PASSWORD)
    rotated = await services.sessions.refresh(third.refresh_token)

    revoked = await services.sessions.logout_all(_principal(reg.user))
    assert revoked == 3

    for token in (reg.refresh_token, second.refresh_token, rotated.refresh_token, third.refresh_token):
        with pytest.raises(Unauthorized):
            await services.sessions.refresh(token)


@pytest.mark.asyncio
async def test_logout_all_keeps_access_tokens_valid(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    await services.sessions.logout_all(_principal(reg.user))
    # tradeoff documentado: el access token no se puede invalidar antes de su exp
    assert services.issuer.verify_access(reg.access_token).id == reg.user.id


@pytest.mark.asyncio
async def test_expired_record_blocks_refresh(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    tid = services.issuer.verify_refresh(reg.refresh_token).token_id

    # el JWT sigue siendo válido; solo el registro ha caducado
    async with services.sessionmaker() as s:
        await s.execute(
            update(RefreshToken)
            .where(RefreshToken.token_id == tid)
            .values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await s.commit()

    with pytest.raises(Unauthorized):
        await services.sessions.refresh(reg.refresh_token)
    with pytest.raises(Unauthorized):
        await services.sessions.logout(reg.refresh_token)


@pytest.mark.asyncio
async def test_refresh_for_deleted_user(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    async with services.sessionmaker() as s:
        await s.execute(delete(User).where(User.id == reg.user.id))
        await s.commit()

    with pytest.raises(Unauthorized):
        await services.sessions.refresh(reg.refresh_token)


@pytest.mark.asyncio
async def test_logout_then_refresh_and_logout_again(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    await services.sessions.logout(reg.refresh_token)

    with pytest.raises(Unauthorized):
        await services.sessions.refresh(reg.refresh_token)
    with pytest.raises(Unauthorized):
        await services.sessions.logout(reg.refresh_token)


@pytest.mark.asyncio
async def test_concurrent_logout_and_refresh_exactly_one_succeeds(services):
    for i in range(10):
        reg = await services.sessions.register(f"race{i}@b.com", PASSWORD)

        logout, refresh = await asyncio.gather(
            services.sessions.logout(reg.refresh_token),
            services.sessions.refresh(reg.refresh_token),
            return_exceptions=True,
        )

        outcomes = [r for r in (logout, refresh) if not isinstance(r, BaseException)]
        failures = [r for r in (logout, refresh) if isinstance(r, BaseException)]
        assert len(outcomes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], Unauthorized)

        rows = await services.store.list_by_user(reg.user.id)
        live = [r for r in rows if r.revoked_at is None]
        if isinstance(logout, BaseException):
            # ganó el refresh: queda exactamente el hijo
            assert len(live) == 1
        else:
            # ganó el logout: no nace ningún hijo
            assert len(rows) == 1
            assert live == []


@pytest.mark.asyncio
async def test_rejections_are_uniform(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    await services.sessions.refresh(reg.refresh_token)

    messages = set()
    for token in ("garbage", reg.access_token, reg.refresh_token):
        with pytest.raises(Unauthorized) as exc:
            await services.sessions.refresh(token)
        messages.add(str(exc.value))
    assert messages == {"Invalid token"}


@pytest.mark.asyncio
async def test_store_outage_is_not_unauthorized(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    async with services.engine.begin() as conn:
        await conn.run_sync(RefreshToken.__table__.drop)

    with pytest.raises(StoreUnavailable):
        await services.sessions.refresh(reg.refresh_token)
    with pytest.raises(StoreUnavailable):
        await services.sessions.logout(reg.refresh_token)


@pytest.mark.asyncio
async def test_list_sessions(services):
    reg = await services.sessions.register(EMAIL, PASSWORD)
    await services.sessions.refresh(reg.refresh_token)

    rows = await services.sessions.list_sessions(_principal(reg.user))
    assert len(rows) == 2
    assert sorted(r.revoked_at is None for r in rows) == [False, True]


@pytest.mark.asyncio
async def test_oversized_password_fails_login_quietly(services, caplog):
    await services.sessions.register(EMAIL, PASSWORD)
    with caplog.at_level(logging.WARNING, logger="grimoire.services.users"):
        with pytest.raises(Unauthorized) as exc:
            await services.sessions.login(EMAIL, "é" * 72)
    assert str(exc.value) == "Invalid credentials"
    assert "malformed password hash" not in caplog.text
