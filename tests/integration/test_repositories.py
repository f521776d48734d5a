from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from cookie_lb.db.models import Account, AccountStatus, ModelQuota, SharedQuotaPool
from cookie_lb.db.session import SessionLocal, session_scope
from cookie_lb.modules.accounts.repository import AccountsRepository
from cookie_lb.modules.quota.repository import QuotaRepository

pytestmark = pytest.mark.integration


async def _seed_accounts(repo: AccountsRepository) -> None:
    await repo.add("d1", user_id="user-1", is_shared=0, access_token="a1", refresh_token="r1", expires_at=1)
    await repo.add("d2", user_id="user-2", is_shared=0, access_token="a2", refresh_token="r2", expires_at=2)
    await repo.add("s1", user_id=None, is_shared=1, access_token="a3", refresh_token="r3", expires_at=3)
    await repo.add("s2", user_id="user-2", is_shared=1, access_token="a4", refresh_token="r4", expires_at=4)


@pytest.mark.asyncio
async def test_list_available_filters_by_tier_and_owner(db_setup):
    async with SessionLocal() as session:
        repo = AccountsRepository(session)
        await _seed_accounts(repo)

        dedicated = await repo.list_available("user-1", 0)
        shared = await repo.list_available("user-1", 1)
        nobody = await repo.list_available(None, 0)

    assert [account.cookie_id for account in dedicated] == ["d1"]
    assert sorted(account.cookie_id for account in shared) == ["s1", "s2"]
    assert nobody == []
    assert dedicated[0].access_token == "a1"
    assert dedicated[0].refresh_token == "r1"


@pytest.mark.asyncio
async def test_tokens_are_stored_encrypted(db_setup):
    async with SessionLocal() as session:
        repo = AccountsRepository(session)
        await repo.add("d1", user_id="user-1", is_shared=0, access_token="plain", refresh_token="r", expires_at=1)

        stored = (await session.execute(select(Account).where(Account.cookie_id == "d1"))).scalar_one()

    assert b"plain" not in stored.access_token_encrypted


@pytest.mark.asyncio
async def test_disabled_accounts_are_not_listed(db_setup):
    async with SessionLocal() as session:
        repo = AccountsRepository(session)
        await _seed_accounts(repo)

        assert await repo.update_status("s1", AccountStatus.DISABLED) is True
        assert await repo.update_status("missing", AccountStatus.DISABLED) is False
        shared = await repo.list_available("user-1", 1)
        disabled = await repo.get_by_cookie_id("s1")

    assert [account.cookie_id for account in shared] == ["s2"]
    assert disabled is not None
    assert disabled.status == AccountStatus.DISABLED


@pytest.mark.asyncio
async def test_update_token_persists_new_credentials(db_setup):
    async with SessionLocal() as session:
        repo = AccountsRepository(session)
        await _seed_accounts(repo)

        assert await repo.update_token("d1", "fresh", 99_000) is True

    async with SessionLocal() as session:
        account = await AccountsRepository(session).get_by_cookie_id("d1")

    assert account is not None
    assert account.access_token == "fresh"
    assert account.refresh_token == "r1"
    assert account.expires_at == 99_000


@pytest.mark.asyncio
async def test_model_list_snapshot_upserts_quota_rows(db_setup):
    async with SessionLocal() as session:
        repo = QuotaRepository(session)

        assert await repo.is_model_available("c1", "gemini-2.5-flash") is True
        assert await repo.get_quota("c1", "gemini-2.5-flash") is None

        written = await repo.apply_model_list_snapshot(
            "c1",
            {
                "gemini-2.5-flash": {"quotaInfo": {"remainingFraction": 0.4}},
                "claude-sonnet-4-5": {"quotaInfo": {"remainingFraction": 1}},
                "no-quota-model": {},
            },
        )
        assert written == 2
        assert await repo.get_quota("c1", "gemini-2.5-flash") == pytest.approx(0.4)

        await repo.apply_model_list_snapshot("c1", {"gemini-2.5-flash": {"quotaInfo": {"remainingFraction": 0}}})

        assert await repo.get_quota("c1", "gemini-2.5-flash") == 0.0
        assert await repo.is_model_available("c1", "gemini-2.5-flash") is False
        assert await repo.is_model_available("c1", "claude-sonnet-4-5") is True
        assert await repo.get_quota("c2", "gemini-2.5-flash") is None


@pytest.mark.asyncio
async def test_shared_pool_balance_round_trip(db_setup):
    async with SessionLocal() as session:
        repo = QuotaRepository(session)

        assert await repo.shared_pool_balance("user-1", "claude-sonnet-4-5") is None
        await repo.set_shared_pool_balance("user-1", "claude-sonnet-4-5", 5.0)
        await repo.set_shared_pool_balance("user-1", "claude-sonnet-4-5", 2.5)

        assert await repo.shared_pool_balance("user-1", "claude-sonnet-4-5") == 2.5
        assert await repo.shared_pool_balance("user-2", "claude-sonnet-4-5") is None


@pytest.mark.asyncio
async def test_consumption_keeps_signed_delta(db_setup):
    async with SessionLocal() as session:
        repo = QuotaRepository(session)
        await repo.record_consumption("user-1", "c1", "gemini-3-pro-high", 10.0, 7.5, 0)
        await repo.record_consumption("user-1", "c1", "gemini-3-pro-high", 0.5, 0.7, 1)

        entries = await repo.list_consumption("user-1")

    assert [entry.quota_consumed for entry in entries] == [pytest.approx(2.5), pytest.approx(-0.2)]
    assert [entry.is_shared for entry in entries] == [0, 1]


async def _apply_snapshot(cookie_id: str, fraction: float) -> None:
    async with session_scope() as session:
        await QuotaRepository(session).apply_model_list_snapshot(
            cookie_id, {"gemini-2.5-flash": {"quotaInfo": {"remainingFraction": fraction}}}
        )


async def _set_pool_balance(quota: float) -> None:
    async with session_scope() as session:
        await QuotaRepository(session).set_shared_pool_balance("user-1", "claude-sonnet-4-5", quota)


@pytest.mark.asyncio
async def test_concurrent_snapshots_for_same_model_keep_one_row(db_setup):
    await asyncio.gather(_apply_snapshot("c1", 0.4), _apply_snapshot("c1", 0.6))
    await _apply_snapshot("c1", 0.25)

    async with SessionLocal() as session:
        rows = (
            await session.execute(
                select(ModelQuota).where(ModelQuota.cookie_id == "c1", ModelQuota.model_name == "gemini-2.5-flash")
            )
        ).scalars().all()

    assert len(rows) == 1
    assert rows[0].quota == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_concurrent_pool_balance_writes_keep_one_row(db_setup):
    await asyncio.gather(_set_pool_balance(5.0), _set_pool_balance(3.0))
    await _set_pool_balance(1.5)

    async with SessionLocal() as session:
        rows = (
            await session.execute(select(SharedQuotaPool).where(SharedQuotaPool.user_id == "user-1"))
        ).scalars().all()

    assert len(rows) == 1
    assert rows[0].quota == 1.5


@pytest.mark.asyncio
async def test_session_scope_rolls_back_uncommitted_work(db_setup):
    with pytest.raises(RuntimeError):
        async with session_scope() as session:
            session.add(SharedQuotaPool(user_id="user-1", model_name="claude-sonnet-4-5", quota=9.0))
            await session.flush()
            raise RuntimeError("request failed")

    async with SessionLocal() as session:
        assert await QuotaRepository(session).shared_pool_balance("user-1", "claude-sonnet-4-5") is None
