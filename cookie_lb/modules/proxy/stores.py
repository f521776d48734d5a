from __future__ import annotations

from collections.abc import Callable, Mapping

from cookie_lb.core.balancer import AccountSnapshot, is_token_expired
from cookie_lb.core.quota.groups import SharedQuotaGroups
from cookie_lb.core.types import JsonValue
from cookie_lb.core.utils.time import now_epoch_ms
from cookie_lb.db.models import AccountStatus
from cookie_lb.modules.proxy.repo_bundle import ProxyRepoFactory


class SqlAccountStore:
    """Account store backed by the accounts table, one short session per call."""

    def __init__(self, repo_factory: ProxyRepoFactory, *, clock: Callable[[], int] = now_epoch_ms) -> None:
        self._repo_factory = repo_factory
        self._clock = clock

    async def list_available(self, user_id: str | None, is_shared: int) -> list[AccountSnapshot]:
        async with self._repo_factory() as repos:
            return await repos.accounts.list_available(user_id, is_shared)

    def is_expired(self, account: AccountSnapshot) -> bool:
        return is_token_expired(account, self._clock())

    async def update_token(self, cookie_id: str, access_token: str, expires_at: int) -> None:
        async with self._repo_factory() as repos:
            await repos.accounts.update_token(cookie_id, access_token, expires_at)

    async def update_status(self, cookie_id: str, status: AccountStatus) -> None:
        async with self._repo_factory() as repos:
            await repos.accounts.update_status(cookie_id, status)

    async def get_by_cookie_id(self, cookie_id: str) -> AccountSnapshot | None:
        async with self._repo_factory() as repos:
            return await repos.accounts.get_by_cookie_id(cookie_id)


class SqlQuotaStore:
    def __init__(self, repo_factory: ProxyRepoFactory, groups: SharedQuotaGroups) -> None:
        self._repo_factory = repo_factory
        self._groups = groups

    async def is_model_available(self, cookie_id: str, model_name: str) -> bool:
        async with self._repo_factory() as repos:
            return await repos.quotas.is_model_available(cookie_id, model_name)

    def shared_group_of(self, model_name: str) -> list[str]:
        return self._groups.group_of(model_name)

    async def shared_pool_balance(self, user_id: str, model_name: str) -> float | None:
        async with self._repo_factory() as repos:
            return await repos.quotas.shared_pool_balance(user_id, model_name)

    async def get_quota(self, cookie_id: str, model_name: str) -> float | None:
        async with self._repo_factory() as repos:
            return await repos.quotas.get_quota(cookie_id, model_name)

    async def apply_model_list_snapshot(self, cookie_id: str, models: Mapping[str, JsonValue] | None) -> None:
        async with self._repo_factory() as repos:
            await repos.quotas.apply_model_list_snapshot(cookie_id, models)

    async def record_consumption(
        self,
        user_id: str,
        cookie_id: str,
        model_name: str,
        quota_before: float,
        quota_after: float,
        is_shared: int,
    ) -> None:
        async with self._repo_factory() as repos:
            await repos.quotas.record_consumption(
                user_id,
                cookie_id,
                model_name,
                quota_before,
                quota_after,
                is_shared,
            )
