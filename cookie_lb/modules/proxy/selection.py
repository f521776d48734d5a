from __future__ import annotations

import logging
import random

from cookie_lb.core.balancer import (
    AccountSnapshot,
    choose_tier,
    order_candidates,
    pick_account,
    tier_of,
)
from cookie_lb.core.errors import NoAccountsConfigured, QuotaExhausted
from cookie_lb.core.metrics import get_metrics
from cookie_lb.modules.accounts.auth_manager import AuthManager
from cookie_lb.modules.proxy.ports import AccountStorePort, QuotaStorePort

logger = logging.getLogger(__name__)


class AccountSelector:
    """Chooses one account for a (user, model) pair.

    Candidates are filtered by quota, split into the preferred and fallback
    tier, and drawn uniformly at random from the first non-empty tier. The
    returned snapshot carries a usable access token.
    """

    def __init__(
        self,
        accounts: AccountStorePort,
        quotas: QuotaStorePort,
        auth_manager: AuthManager,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._accounts = accounts
        self._quotas = quotas
        self._auth_manager = auth_manager
        self._rng = rng or random.Random()

    async def select(self, user_id: str, model_name: str, prefer_shared: bool) -> AccountSnapshot:
        candidates = await self._candidates(user_id, prefer_shared)
        if not candidates:
            get_metrics().observe_selection(tier=None, outcome="no_accounts")
            raise NoAccountsConfigured("No upstream accounts are configured for this user")

        eligible = [account for account in candidates if await self._has_quota(account, user_id, model_name)]
        if not eligible:
            get_metrics().observe_selection(tier=None, outcome="quota_exhausted")
            raise QuotaExhausted(
                f"Every account is out of quota for model {model_name}, or the shared quota pool is empty"
            )

        choice = choose_tier(eligible, prefer_shared)
        index, account = pick_account(choice.pool, self._rng)
        get_metrics().observe_selection(tier=choice.tier.value, outcome="fallback" if choice.fell_back else "selected")
        logger.info(
            "Selected account cookie_id=%s tier=%s fell_back=%s index=%s pool_size=%s eligible=%s",
            account.cookie_id,
            choice.tier.value,
            choice.fell_back,
            index,
            len(choice.pool),
            len(eligible),
        )
        return await self._auth_manager.ensure_fresh(account)

    async def _candidates(self, user_id: str, prefer_shared: bool) -> list[AccountSnapshot]:
        if prefer_shared:
            shared = await self._accounts.list_available(None, 1)
            dedicated = await self._accounts.list_available(user_id, 0)
        else:
            dedicated = await self._accounts.list_available(user_id, 0)
            shared = await self._accounts.list_available(None, 1)
        logger.debug(
            "Candidate accounts user_id=%s prefer_shared=%s dedicated=%s shared=%s",
            user_id,
            prefer_shared,
            len(dedicated),
            len(shared),
        )
        return order_candidates(dedicated, shared, prefer_shared)

    async def _has_quota(self, account: AccountSnapshot, user_id: str, model_name: str) -> bool:
        if not await self._quotas.is_model_available(account.cookie_id, model_name):
            self._skip(account, model_name, "account quota exhausted")
            return False
        if not account.shared:
            return True
        group = self._quotas.shared_group_of(model_name)
        for member in group:
            balance = await self._quotas.shared_pool_balance(user_id, member)
            if balance is not None and balance > 0:
                return True
        self._skip(account, model_name, f"shared pool empty for {','.join(group)}")
        return False

    def _skip(self, account: AccountSnapshot, model_name: str, reason: str) -> None:
        get_metrics().observe_quota_skip(tier=tier_of(account).value)
        logger.info("Skipping account cookie_id=%s model=%s reason=%s", account.cookie_id, model_name, reason)
