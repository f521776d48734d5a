from __future__ import annotations

import logging

from cookie_lb.core.balancer import AccountSnapshot
from cookie_lb.core.metrics import get_metrics
from cookie_lb.core.types import JsonObject
from cookie_lb.modules.proxy.ports import AccountStorePort, QuotaStorePort, UpstreamPort

logger = logging.getLogger(__name__)


class QuotaAccountant:
    def __init__(self, accounts: AccountStorePort, quotas: QuotaStorePort, upstream: UpstreamPort) -> None:
        self._accounts = accounts
        self._quotas = quotas
        self._upstream = upstream

    async def refresh(self, account: AccountSnapshot) -> None:
        """Poll the upstream model list for live balances and persist them."""
        data = await self._upstream.fetch_models(account.access_token)
        models = data.get("models")
        if isinstance(models, dict):
            await self.apply_snapshot(account, models)

    async def apply_snapshot(self, account: AccountSnapshot, models: JsonObject) -> None:
        await self._quotas.apply_model_list_snapshot(account.cookie_id, models)

    async def live_quota(self, account: AccountSnapshot, model_name: str) -> float | None:
        await self.refresh(account)
        return await self._quotas.get_quota(account.cookie_id, model_name)

    async def account_after_completion(self, cookie_id: str, model_name: str) -> float | None:
        account = await self._accounts.get_by_cookie_id(cookie_id)
        if account is None:
            logger.warning("Account vanished before quota accounting cookie_id=%s", cookie_id)
            return None
        return await self.live_quota(account, model_name)

    async def record_consumption(
        self,
        user_id: str,
        cookie_id: str,
        model_name: str,
        quota_before: float | None,
        quota_after: float | None,
        is_shared: int,
    ) -> bool:
        if quota_before is None or quota_after is None:
            get_metrics().observe_consumption(outcome="skipped")
            logger.warning(
                "Cannot record quota consumption cookie_id=%s model=%s quota_before=%s quota_after=%s",
                cookie_id,
                model_name,
                quota_before,
                quota_after,
            )
            return False
        await self._quotas.record_consumption(user_id, cookie_id, model_name, quota_before, quota_after, is_shared)
        get_metrics().observe_consumption(outcome="recorded")
        logger.info(
            "Recorded quota consumption user_id=%s cookie_id=%s model=%s is_shared=%s consumed=%.4f",
            user_id,
            cookie_id,
            model_name,
            is_shared,
            quota_before - quota_after,
        )
        return True

    async def settle(
        self,
        user_id: str,
        account: AccountSnapshot,
        model_name: str,
        quota_before: float | None,
    ) -> None:
        try:
            quota_after = await self.account_after_completion(account.cookie_id, model_name)
            await self.record_consumption(
                user_id,
                account.cookie_id,
                model_name,
                quota_before,
                quota_after,
                account.is_shared,
            )
        except Exception:
            get_metrics().observe_consumption(outcome="error")
            logger.warning(
                "Quota accounting failed cookie_id=%s model=%s",
                account.cookie_id,
                model_name,
                exc_info=True,
            )
