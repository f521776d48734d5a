from __future__ import annotations

import json
import random
from contextlib import asynccontextmanager

import pytest

from cookie_lb.core.balancer import AccountSnapshot
from cookie_lb.core.clients.oauth import TokenRefreshResult
from cookie_lb.core.errors import (
    NoAccountsConfigured,
    PermissionDenied,
    QuotaExhausted,
    QuotaLookupError,
    QuotaRotationExhausted,
    UpstreamError,
)
from cookie_lb.core.quota.groups import SharedQuotaGroups
from cookie_lb.core.quota.snapshot import parse_model_list_snapshot
from cookie_lb.core.streaming.events import TextEvent, ThinkingEvent
from cookie_lb.db.models import AccountStatus
from cookie_lb.modules.proxy.service import ProxyService, resolve_prefer_shared

pytestmark = pytest.mark.unit

NOW_MS = 1_700_000_000_000
MODEL = "claude-sonnet-4-5"


def _account(cookie_id: str, *, shared: bool = False) -> AccountSnapshot:
    return AccountSnapshot(
        cookie_id=cookie_id,
        user_id=None if shared else "user-1",
        is_shared=1 if shared else 0,
        access_token=f"access-{cookie_id}",
        refresh_token=f"refresh-{cookie_id}",
        expires_at=NOW_MS + 3_600_000,
    )


def _models(fraction: float) -> dict:
    return {"models": {MODEL: {"quotaInfo": {"remainingFraction": fraction}}}}


def _sse(*texts: str) -> list[bytes]:
    chunks = []
    for text in texts:
        record = {"response": {"candidates": [{"content": {"parts": [{"text": text}]}}]}}
        chunks.append(f"data: {json.dumps(record)}\n".encode())
    return chunks


class FakeAccountStore:
    def __init__(self, accounts: list[AccountSnapshot]) -> None:
        self.accounts = {account.cookie_id: account for account in accounts}
        self.status_updates: list[tuple[str, AccountStatus]] = []

    async def list_available(self, user_id, is_shared):
        return [
            account
            for account in self.accounts.values()
            if account.is_shared == is_shared and (is_shared == 1 or account.user_id == user_id)
        ]

    def is_expired(self, account):
        return account.expires_at <= NOW_MS

    async def update_token(self, cookie_id, access_token, expires_at):
        return None

    async def update_status(self, cookie_id, status):
        self.status_updates.append((cookie_id, status))
        self.accounts.pop(cookie_id, None)

    async def get_by_cookie_id(self, cookie_id):
        return self.accounts.get(cookie_id)


class FakeQuotaStore:
    def __init__(self, *, pool_balance: float = 10.0) -> None:
        self.quotas: dict[tuple[str, str], float] = {}
        self.pool_balance = pool_balance
        self.consumption: list[tuple] = []

    async def is_model_available(self, cookie_id, model_name):
        quota = self.quotas.get((cookie_id, model_name))
        return quota is None or quota > 0

    def shared_group_of(self, model_name):
        return SharedQuotaGroups([]).group_of(model_name)

    async def shared_pool_balance(self, user_id, model_name):
        return self.pool_balance

    async def get_quota(self, cookie_id, model_name):
        return self.quotas.get((cookie_id, model_name))

    async def apply_model_list_snapshot(self, cookie_id, models):
        for update in parse_model_list_snapshot(models):
            self.quotas[(cookie_id, update.model_name)] = update.quota

    async def record_consumption(self, user_id, cookie_id, model_name, quota_before, quota_after, is_shared):
        self.consumption.append((user_id, cookie_id, model_name, quota_before, quota_after, is_shared))


class StaleQuotaStore(FakeQuotaStore):
    """Quota store whose availability cache never learns about exhaustion."""

    async def is_model_available(self, cookie_id, model_name):
        return True


class StubRefresher:
    async def refresh(self, refresh_token):
        return TokenRefreshResult(access_token="fresh", expires_in_seconds=3600)


class FakeUpstream:
    def __init__(
        self,
        *,
        model_responses: list[object] | None = None,
        chunks: list[bytes] | None = None,
        open_error: Exception | None = None,
    ) -> None:
        self._model_responses = list(model_responses or [])
        self._chunks = chunks or []
        self._open_error = open_error
        self.models_calls: list[str] = []
        self.generate_calls: list[str] = []
        self.closed = False

    async def fetch_models(self, access_token):
        self.models_calls.append(access_token)
        response = self._model_responses.pop(0) if len(self._model_responses) > 1 else self._model_responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def stream_generate(self, access_token, body):
        self.generate_calls.append(access_token)
        return self._open(access_token)

    @asynccontextmanager
    async def _open(self, access_token):
        if self._open_error is not None:
            raise self._open_error

        async def _body():
            for chunk in self._chunks:
                yield chunk

        try:
            yield _body()
        finally:
            self.closed = True


def _service(accounts, quotas, upstream, **kwargs) -> ProxyService:
    return ProxyService(
        accounts,
        quotas,
        StubRefresher(),
        upstream,
        rng=random.Random(3),
        max_attempts=5,
        no_markup_prefixes=("gemini-",),
        clock=lambda: NOW_MS,
        **kwargs,
    )


async def _collect(service: ProxyService, *, prefer_shared: bool = False) -> list:
    events = []
    async for event in service.stream_events({"contents": []}, "user-1", MODEL, prefer_shared):
        events.append(event)
    return events


@pytest.mark.asyncio
async def test_rotation_ends_when_every_account_is_exhausted():
    accounts = FakeAccountStore([_account("d1"), _account("d2")])
    upstream = FakeUpstream(model_responses=[_models(0.0)])
    service = _service(accounts, FakeQuotaStore(), upstream)

    with pytest.raises(QuotaRotationExhausted) as exc_info:
        await _collect(service)

    assert exc_info.value.attempts == 5
    # Both accounts are drawn once; the empty re-draws use up the remaining attempts.
    assert sorted(upstream.models_calls) == ["access-d1", "access-d2"]
    assert upstream.generate_calls == []


@pytest.mark.asyncio
async def test_rotation_stops_after_five_exhausted_draws():
    accounts = FakeAccountStore([_account("d1"), _account("d2")])
    upstream = FakeUpstream(model_responses=[_models(0.0)])
    service = _service(accounts, StaleQuotaStore(), upstream)

    with pytest.raises(QuotaRotationExhausted) as exc_info:
        await _collect(service)

    assert exc_info.value.attempts == 5
    assert len(upstream.models_calls) == 5
    assert upstream.generate_calls == []


@pytest.mark.asyncio
async def test_exhausted_pool_on_first_draw_is_not_retried():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(model_responses=[_models(0.5)])
    quotas = FakeQuotaStore()
    quotas.quotas[("d1", MODEL)] = 0.0
    service = _service(accounts, quotas, upstream)

    with pytest.raises(QuotaExhausted):
        await _collect(service)
    assert upstream.models_calls == []


@pytest.mark.asyncio
async def test_rotation_continues_to_account_with_quota():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(
        model_responses=[_models(0.0), _models(0.0), _models(0.8), _models(0.7)],
        chunks=_sse("hi"),
    )
    quotas = StaleQuotaStore()
    service = _service(accounts, quotas, upstream)

    events = await _collect(service)

    assert events == [TextEvent("hi")]
    # Three selection attempts plus the post-completion lookup.
    assert len(upstream.models_calls) == 4
    assert quotas.consumption == [("user-1", "d1", MODEL, 0.8, 0.7, 0)]


@pytest.mark.asyncio
async def test_transient_lookup_error_is_retried():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(
        model_responses=[QuotaLookupError("boom", status_code=503), _models(0.5)],
        chunks=_sse("ok"),
    )
    service = _service(accounts, FakeQuotaStore(), upstream)

    assert await _collect(service) == [TextEvent("ok")]


@pytest.mark.asyncio
async def test_transient_error_surfaces_on_last_attempt():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(model_responses=[QuotaLookupError("boom", status_code=503)])
    service = _service(accounts, FakeQuotaStore(), upstream)

    with pytest.raises(QuotaLookupError):
        await _collect(service)
    assert len(upstream.models_calls) == 5


@pytest.mark.asyncio
async def test_unknown_quota_is_dispatched_without_recording():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(model_responses=[{"models": {}}], chunks=_sse("ok"))
    quotas = FakeQuotaStore()
    service = _service(accounts, quotas, upstream)

    assert await _collect(service) == [TextEvent("ok")]
    assert quotas.consumption == []


@pytest.mark.asyncio
async def test_no_accounts_is_not_retried():
    upstream = FakeUpstream(model_responses=[_models(1.0)])
    service = _service(FakeAccountStore([]), FakeQuotaStore(), upstream)

    with pytest.raises(NoAccountsConfigured):
        await _collect(service)
    assert upstream.models_calls == []


@pytest.mark.asyncio
async def test_permission_denied_disables_account():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(model_responses=[_models(0.5)], open_error=PermissionDenied("forbidden"))
    quotas = FakeQuotaStore()
    service = _service(accounts, quotas, upstream)

    with pytest.raises(PermissionDenied) as exc_info:
        await _collect(service)

    assert exc_info.value.cookie_id == "d1"
    assert exc_info.value.status_code == 403
    assert accounts.status_updates == [("d1", AccountStatus.DISABLED)]
    assert quotas.consumption == []


@pytest.mark.asyncio
async def test_upstream_error_leaves_account_enabled():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(model_responses=[_models(0.5)], open_error=UpstreamError(500, "oops"))
    service = _service(accounts, FakeQuotaStore(), upstream)

    with pytest.raises(UpstreamError):
        await _collect(service)
    assert accounts.status_updates == []


@pytest.mark.asyncio
async def test_dispatch_delivers_events_in_order_to_sink():
    accounts = FakeAccountStore([_account("d1")])
    thought = {"response": {"candidates": [{"content": {"parts": [{"thought": True, "text": "plan"}]}}]}}
    chunks = [f"data: {json.dumps(thought)}\n".encode(), *_sse("answer")]
    upstream = FakeUpstream(model_responses=[_models(0.9)], chunks=chunks)
    service = _service(accounts, FakeQuotaStore(), upstream)
    received = []

    async def sink(event):
        received.append(event)

    await service.dispatch({"contents": []}, sink, "user-1", MODEL, user={"prefer_shared": 0})

    assert received == [
        ThinkingEvent("<think>\n"),
        ThinkingEvent("plan"),
        ThinkingEvent("\n</think>\n"),
        TextEvent("answer"),
    ]
    assert upstream.closed is True


@pytest.mark.asyncio
async def test_settlement_runs_when_consumer_stops_early():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(model_responses=[_models(0.9), _models(0.6)], chunks=_sse("a", "b", "c"))
    quotas = FakeQuotaStore()
    service = _service(accounts, quotas, upstream)

    events = service.stream_events({"contents": []}, "user-1", MODEL, False)
    first = await events.__anext__()
    await events.aclose()

    assert first == TextEvent("a")
    assert upstream.closed is True
    assert quotas.consumption == [("user-1", "d1", MODEL, 0.9, 0.6, 0)]


@pytest.mark.asyncio
async def test_shared_account_consumption_is_flagged_shared():
    accounts = FakeAccountStore([_account("s1", shared=True)])
    upstream = FakeUpstream(model_responses=[_models(1.0), _models(0.75)], chunks=_sse("x"))
    quotas = FakeQuotaStore()
    service = _service(accounts, quotas, upstream)

    await _collect(service, prefer_shared=True)

    assert quotas.consumption == [("user-1", "s1", MODEL, 1.0, 0.75, 1)]


@pytest.mark.asyncio
async def test_list_models_uses_dedicated_account_first():
    accounts = FakeAccountStore([_account("s1", shared=True), _account("d1")])
    upstream = FakeUpstream(model_responses=[{"models": {MODEL: {}, "gemini-2.5-flash": {}}}])
    service = _service(accounts, FakeQuotaStore(), upstream)

    result = await service.list_models("user-1")

    assert upstream.models_calls == ["access-d1"]
    assert result["object"] == "list"
    assert [item["id"] for item in result["data"]] == [MODEL, "gemini-2.5-flash"]
    assert all(item["owned_by"] == "google" for item in result["data"])


@pytest.mark.asyncio
async def test_list_models_maps_lookup_error_to_upstream_error():
    accounts = FakeAccountStore([_account("d1")])
    upstream = FakeUpstream(model_responses=[QuotaLookupError("denied", status_code=401, body="denied")])
    service = _service(accounts, FakeQuotaStore(), upstream)

    with pytest.raises(UpstreamError) as exc_info:
        await service.list_models("user-1")
    assert exc_info.value.status_code == 401


@pytest.mark.parametrize(
    ("user", "expected"),
    [
        (None, False),
        ({}, False),
        ({"prefer_shared": 1}, True),
        ({"prefer_shared": 0}, False),
        ({"prefer_shared": None}, False),
    ],
)
def test_resolve_prefer_shared(user, expected):
    assert resolve_prefer_shared(user) is expected
