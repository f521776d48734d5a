from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from cookie_lb.core.clients.oauth import OAuthTokenRefresher
from cookie_lb.core.clients.upstream import UpstreamClient
from cookie_lb.core.config.settings import get_settings
from cookie_lb.core.quota.groups import SharedQuotaGroups
from cookie_lb.db.session import session_scope
from cookie_lb.modules.accounts.repository import AccountsRepository
from cookie_lb.modules.proxy.repo_bundle import ProxyRepositories
from cookie_lb.modules.proxy.service import ProxyService
from cookie_lb.modules.proxy.stores import SqlAccountStore, SqlQuotaStore
from cookie_lb.modules.quota.repository import QuotaRepository


@dataclass(slots=True)
class ProxyContext:
    service: ProxyService


@dataclass(frozen=True, slots=True)
class CallerIdentity:
    user_id: str
    prefer_shared: int


@asynccontextmanager
async def _proxy_repo_context() -> AsyncIterator[ProxyRepositories]:
    async with session_scope() as session:
        yield ProxyRepositories(
            accounts=AccountsRepository(session),
            quotas=QuotaRepository(session),
        )


def build_proxy_service() -> ProxyService:
    settings = get_settings()
    groups = SharedQuotaGroups(settings.quota_shared_groups)
    return ProxyService(
        SqlAccountStore(_proxy_repo_context),
        SqlQuotaStore(_proxy_repo_context, groups),
        OAuthTokenRefresher(),
        UpstreamClient(),
    )


def get_proxy_context(request: Request) -> ProxyContext:
    service = getattr(request.app.state, "proxy_service", None)
    if service is None:
        service = build_proxy_service()
        request.app.state.proxy_service = service
    return ProxyContext(service=service)


def get_caller_identity(
    x_user_id: str | None = Header(default=None),
    x_prefer_shared: str | None = Header(default=None),
) -> CallerIdentity:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing x-user-id header")
    return CallerIdentity(user_id=user_id, prefer_shared=1 if (x_prefer_shared or "").strip() == "1" else 0)
