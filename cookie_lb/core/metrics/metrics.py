from __future__ import annotations

from typing import Final

from prometheus_client import CollectorRegistry, Counter, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"


def _status_label(status_code: int | None) -> str:
    if status_code is None or status_code <= 0:
        return "transport"
    return str(int(status_code))


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)

        self._selections_total = Counter(
            "cookie_lb_selections_total",
            "Account selections by tier and outcome.",
            labelnames=("tier", "outcome"),
            registry=self._registry,
        )
        self._quota_skips_total = Counter(
            "cookie_lb_quota_skips_total",
            "Candidate accounts dropped by the quota filter.",
            labelnames=("tier",),
            registry=self._registry,
        )
        self._token_refreshes_total = Counter(
            "cookie_lb_token_refreshes_total",
            "Access token refreshes by outcome.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._quota_rotations_total = Counter(
            "cookie_lb_quota_rotations_total",
            "Dispatch attempts abandoned because live quota was exhausted or unreadable.",
            labelnames=("reason",),
            registry=self._registry,
        )
        self._upstream_errors_total = Counter(
            "cookie_lb_upstream_errors_total",
            "Upstream failures by endpoint and HTTP status.",
            labelnames=("endpoint", "status"),
            registry=self._registry,
        )
        self._accounts_disabled_total = Counter(
            "cookie_lb_accounts_disabled_total",
            "Accounts disabled after a permission failure.",
            registry=self._registry,
        )
        self._malformed_records_total = Counter(
            "cookie_lb_malformed_stream_records_total",
            "Upstream stream records that failed to parse.",
            labelnames=("model",),
            registry=self._registry,
        )
        self._consumption_total = Counter(
            "cookie_lb_consumption_records_total",
            "Quota consumption records by outcome.",
            labelnames=("outcome",),
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_selection(self, *, tier: str | None, outcome: str) -> None:
        self._selections_total.labels(tier=tier or "none", outcome=outcome or "unknown").inc()

    def observe_quota_skip(self, *, tier: str) -> None:
        self._quota_skips_total.labels(tier=tier or "unknown").inc()

    def observe_token_refresh(self, *, outcome: str) -> None:
        self._token_refreshes_total.labels(outcome=outcome or "unknown").inc()

    def observe_quota_rotation(self, *, reason: str) -> None:
        self._quota_rotations_total.labels(reason=reason or "unknown").inc()

    def observe_upstream_error(self, *, endpoint: str, status_code: int | None) -> None:
        self._upstream_errors_total.labels(endpoint=endpoint or "unknown", status=_status_label(status_code)).inc()

    def observe_account_disabled(self) -> None:
        self._accounts_disabled_total.inc()

    def observe_malformed_record(self, *, model: str | None) -> None:
        self._malformed_records_total.labels(model=model or "unknown").inc()

    def observe_consumption(self, *, outcome: str) -> None:
        self._consumption_total.labels(outcome=outcome or "unknown").inc()
