from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime

from cookie_lb.core.types import JsonValue
from cookie_lb.core.utils.time import parse_rfc3339


@dataclass(frozen=True, slots=True)
class ModelQuotaUpdate:
    model_name: str
    quota: float
    reset_at: datetime | None


def normalize_quota_fraction(value: JsonValue) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        fraction = float(value)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            fraction = float(raw[:-1]) / 100.0 if raw.endswith("%") else float(raw)
        except ValueError:
            return None
    else:
        return None
    # Some upstream builds report a percentage instead of a fraction.
    if 1 < fraction <= 100:
        fraction /= 100.0
    return max(fraction, 0.0)


def parse_model_list_snapshot(models: Mapping[str, JsonValue] | None) -> list[ModelQuotaUpdate]:
    """Extract per-model quota rows from a ``fetchAvailableModels`` ``models`` map.

    Models whose metadata carries neither a remaining fraction nor a reset time
    are skipped so a missing field never reads as a full balance.
    """
    if not isinstance(models, Mapping):
        return []
    updates: list[ModelQuotaUpdate] = []
    for model_name, metadata in models.items():
        if not isinstance(model_name, str) or not model_name.strip():
            continue
        if not isinstance(metadata, dict):
            continue
        quota_info = metadata.get("quotaInfo")
        if not isinstance(quota_info, dict):
            continue
        remaining = normalize_quota_fraction(quota_info.get("remainingFraction"))
        reset_at = parse_rfc3339(quota_info.get("resetTime"))
        if remaining is None and reset_at is None:
            continue
        updates.append(
            ModelQuotaUpdate(
                model_name=model_name.strip(),
                quota=remaining if remaining is not None else 0.0,
                reset_at=reset_at,
            )
        )
    return updates
