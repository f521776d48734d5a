from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import aclosing
from typing import AsyncIterator

import anyio

from cookie_lb.core.balancer import AccountSnapshot
from cookie_lb.core.config.settings import get_settings
from cookie_lb.core.errors import (
    TRANSIENT_ERRORS,
    NoAccountsConfigured,
    PermissionDenied,
    QuotaExhausted,
    QuotaLookupError,
    QuotaRotationExhausted,
    UpstreamError,
)
from cookie_lb.core.metrics import get_metrics
from cookie_lb.core.streaming.events import EventSink, StreamEvent
from cookie_lb.core.streaming.translator import StreamTranslator, iter_events
from cookie_lb.core.types import JsonObject
from cookie_lb.core.utils.request_id import ensure_request_id
from cookie_lb.core.utils.time import now_epoch_ms
from cookie_lb.db.models import AccountStatus
from cookie_lb.modules.accounts.auth_manager import AuthManager
from cookie_lb.modules.proxy.ports import AccountStorePort, QuotaStorePort, TokenRefresherPort, UpstreamPort
from cookie_lb.modules.proxy.selection import AccountSelector
from cookie_lb.modules.quota.accountant import QuotaAccountant

logger = logging.getLogger(__name__)


def resolve_prefer_shared(user: Mapping[str, object] | object | None) -> bool:
    if user is None:
        return False
    if isinstance(user, Mapping):
        value = user.get("prefer_shared")
    else:
        value = getattr(user, "prefer_shared", None)
    if value is None:
        return False
    return value == 1


class ProxyService:
    def __init__(
        self,
        accounts: AccountStorePort,
        quotas: QuotaStorePort,
        refresher: TokenRefresherPort,
        upstream: UpstreamPort,
        *,
        rng: random.Random | None = None,
        max_attempts: int | None = None,
        no_markup_prefixes: Sequence[str] | None = None,
        clock: Callable[[], int] = now_epoch_ms,
    ) -> None:
        settings = get_settings()
        self._accounts = accounts
        self._upstream = upstream
        self._auth_manager = AuthManager(accounts, refresher, clock=clock)
        self._selector = AccountSelector(accounts, quotas, self._auth_manager, rng=rng)
        self._accountant = QuotaAccountant(accounts, quotas, upstream)
        self._max_attempts = max_attempts if max_attempts is not None else settings.dispatch_max_attempts
        self._no_markup_prefixes = tuple(
            no_markup_prefixes if no_markup_prefixes is not None else settings.no_think_markup_model_prefixes
        )

    async def dispatch(
        self,
        request: JsonObject,
        sink: EventSink,
        user_id: str,
        model_name: str,
        user: Mapping[str, object] | object | None = None,
    ) -> None:
        prefer_shared = resolve_prefer_shared(user)
        async with aclosing(self.stream_events(request, user_id, model_name, prefer_shared)) as events:
            async for event in events:
                await sink(event)

    async def stream_events(
        self,
        request: JsonObject,
        user_id: str,
        model_name: str,
        prefer_shared: bool,
    ) -> AsyncIterator[StreamEvent]:
        request_id = ensure_request_id()
        account, quota_before = await self.acquire_account(user_id, model_name, prefer_shared)
        translator = StreamTranslator(model_name, no_markup_prefixes=self._no_markup_prefixes)
        started = False
        try:
            async with self._upstream.stream_generate(account.access_token, request) as chunks:
                started = True
                async with aclosing(iter_events(chunks, translator)) as events:
                    async for event in events:
                        yield event
        except PermissionDenied as exc:
            await self._disable(account, request_id)
            raise PermissionDenied(exc.body or "", cookie_id=account.cookie_id) from exc
        finally:
            if started:
                # Also runs when the caller disconnects mid-stream.
                with anyio.CancelScope(shield=True):
                    await self._accountant.settle(user_id, account, model_name, quota_before)

    async def acquire_account(
        self,
        user_id: str,
        model_name: str,
        prefer_shared: bool,
    ) -> tuple[AccountSnapshot, float | None]:
        """Select an account whose live quota for ``model_name`` is not exhausted.

        Returns the account and its pre-call quota. Each attempt makes a fresh
        random selection; the cycle is bounded by ``dispatch_max_attempts``.
        Once an account has been rotated away from, an empty re-draw consumes an
        attempt instead of ending the cycle, so running out of candidates mid-rotation
        surfaces as ``QuotaRotationExhausted``.
        """
        rotated = False
        for attempt in range(1, self._max_attempts + 1):
            try:
                account = await self._selector.select(user_id, model_name, prefer_shared)
                quota = await self._accountant.live_quota(account, model_name)
            except (QuotaExhausted, NoAccountsConfigured) as exc:
                if not rotated:
                    raise
                get_metrics().observe_quota_rotation(reason=exc.kind.value)
                logger.warning(
                    "No candidate left after rotation user_id=%s model=%s attempt=%s error=%s",
                    user_id,
                    model_name,
                    attempt,
                    exc.message,
                )
                continue
            except TRANSIENT_ERRORS as exc:
                get_metrics().observe_quota_rotation(reason=exc.kind.value)
                if attempt >= self._max_attempts:
                    raise
                logger.warning(
                    "Live quota check failed, retrying user_id=%s model=%s attempt=%s error=%s",
                    user_id,
                    model_name,
                    attempt,
                    exc.message,
                )
                continue
            if quota is not None and quota <= 0:
                get_metrics().observe_quota_rotation(reason="exhausted")
                rotated = True
                logger.warning(
                    "Account quota exhausted, rotating cookie_id=%s model=%s quota=%s attempt=%s",
                    account.cookie_id,
                    model_name,
                    quota,
                    attempt,
                )
                continue
            logger.info(
                "Dispatching cookie_id=%s model=%s quota_before=%s attempt=%s",
                account.cookie_id,
                model_name,
                quota,
                attempt,
            )
            return account, quota
        raise QuotaRotationExhausted(self._max_attempts)

    async def list_models(self, user_id: str) -> JsonObject:
        accounts = await self._accounts.list_available(user_id, 0)
        if not accounts:
            accounts = await self._accounts.list_available(None, 1)
        if not accounts:
            raise NoAccountsConfigured("No upstream accounts are configured for this user")
        account = await self._auth_manager.ensure_fresh(accounts[0])
        try:
            data = await self._upstream.fetch_models(account.access_token)
        except QuotaLookupError as exc:
            raise UpstreamError(exc.status_code or 0, exc.body or exc.message) from exc
        models = data.get("models")
        if not isinstance(models, dict):
            models = {}
        else:
            await self._accountant.apply_snapshot(account, models)
        created = int(time.time())
        return {
            "object": "list",
            "data": [
                {"id": model_id, "object": "model", "created": created, "owned_by": "google"} for model_id in models
            ],
        }

    async def _disable(self, account: AccountSnapshot, request_id: str) -> None:
        logger.warning(
            "Upstream denied permission, disabling account cookie_id=%s request_id=%s",
            account.cookie_id,
            request_id,
        )
        await self._accounts.update_status(account.cookie_id, AccountStatus.DISABLED)
        get_metrics().observe_account_disabled()
