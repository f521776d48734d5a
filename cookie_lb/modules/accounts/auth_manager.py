from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from cookie_lb.core.balancer import AccountSnapshot
from cookie_lb.core.errors import RefreshError
from cookie_lb.core.metrics import get_metrics
from cookie_lb.core.utils.time import now_epoch_ms
from cookie_lb.modules.proxy.ports import TokenRefresherPort


class AccountTokensPort(Protocol):
    def is_expired(self, account: AccountSnapshot) -> bool: ...

    async def update_token(self, cookie_id: str, access_token: str, expires_at: int) -> None: ...


logger = logging.getLogger(__name__)


class AuthManager:
    def __init__(
        self,
        repo: AccountTokensPort,
        refresher: TokenRefresherPort,
        *,
        clock: Callable[[], int] = now_epoch_ms,
    ) -> None:
        self._repo = repo
        self._refresher = refresher
        self._clock = clock

    async def ensure_fresh(self, account: AccountSnapshot) -> AccountSnapshot:
        if not self._repo.is_expired(account):
            return account
        return await self.refresh_account(account)

    async def refresh_account(self, account: AccountSnapshot) -> AccountSnapshot:
        logger.info("Refreshing expired access token cookie_id=%s", account.cookie_id)
        try:
            result = await self._refresher.refresh(account.refresh_token)
        except RefreshError:
            get_metrics().observe_token_refresh(outcome="error")
            raise
        expires_at = self._clock() + result.expires_in_seconds * 1000
        await self._repo.update_token(account.cookie_id, result.access_token, expires_at)
        get_metrics().observe_token_refresh(outcome="success")
        return replace(account, access_token=result.access_token, expires_at=expires_at)
