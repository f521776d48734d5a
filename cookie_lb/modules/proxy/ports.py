from __future__ import annotations

from collections.abc import Mapping
from typing import AsyncContextManager, AsyncIterator, Protocol

from cookie_lb.core.balancer import AccountSnapshot
from cookie_lb.core.clients.oauth import TokenRefreshResult
from cookie_lb.core.types import JsonObject, JsonValue
from cookie_lb.db.models import AccountStatus


class AccountStorePort(Protocol):
    async def list_available(self, user_id: str | None, is_shared: int) -> list[AccountSnapshot]: ...

    def is_expired(self, account: AccountSnapshot) -> bool: ...

    async def update_token(self, cookie_id: str, access_token: str, expires_at: int) -> None: ...

    async def update_status(self, cookie_id: str, status: AccountStatus) -> None: ...

    async def get_by_cookie_id(self, cookie_id: str) -> AccountSnapshot | None: ...


class QuotaStorePort(Protocol):
    async def is_model_available(self, cookie_id: str, model_name: str) -> bool: ...

    def shared_group_of(self, model_name: str) -> list[str]: ...

    async def shared_pool_balance(self, user_id: str, model_name: str) -> float | None: ...

    async def get_quota(self, cookie_id: str, model_name: str) -> float | None: ...

    async def apply_model_list_snapshot(self, cookie_id: str, models: Mapping[str, JsonValue] | None) -> None: ...

    async def record_consumption(
        self,
        user_id: str,
        cookie_id: str,
        model_name: str,
        quota_before: float,
        quota_after: float,
        is_shared: int,
    ) -> None: ...


class TokenRefresherPort(Protocol):
    async def refresh(self, refresh_token: str) -> TokenRefreshResult: ...


class UpstreamPort(Protocol):
    def stream_generate(self, access_token: str, body: JsonObject) -> AsyncContextManager[AsyncIterator[bytes]]: ...

    async def fetch_models(self, access_token: str) -> JsonObject: ...
