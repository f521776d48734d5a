from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

from cookie_lb.db.models import AccountStatus


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """Point-in-time copy of one pooled upstream account.

    Snapshots are never mutated; a token refresh produces a new snapshot via
    ``dataclasses.replace`` so concurrently held copies of the same ``cookie_id``
    may legitimately disagree.
    """

    cookie_id: str
    user_id: str | None
    is_shared: int
    access_token: str
    refresh_token: str
    expires_at: int
    status: AccountStatus = AccountStatus.ENABLED

    @property
    def shared(self) -> bool:
        return self.is_shared == 1


class PoolTier(str, Enum):
    DEDICATED = "dedicated"
    SHARED = "shared"


@dataclass(frozen=True, slots=True)
class TierChoice:
    tier: PoolTier
    pool: tuple[AccountSnapshot, ...]
    fell_back: bool


def preferred_tier(prefer_shared: bool) -> PoolTier:
    return PoolTier.SHARED if prefer_shared else PoolTier.DEDICATED


def tier_of(account: AccountSnapshot) -> PoolTier:
    return PoolTier.SHARED if account.shared else PoolTier.DEDICATED


def order_candidates(
    dedicated: Iterable[AccountSnapshot],
    shared: Iterable[AccountSnapshot],
    prefer_shared: bool,
) -> list[AccountSnapshot]:
    if prefer_shared:
        return [*shared, *dedicated]
    return [*dedicated, *shared]


def choose_tier(eligible: Sequence[AccountSnapshot], prefer_shared: bool) -> TierChoice:
    if not eligible:
        raise ValueError("choose_tier requires at least one eligible account")
    wanted = preferred_tier(prefer_shared)
    preferred = tuple(account for account in eligible if tier_of(account) == wanted)
    if preferred:
        return TierChoice(tier=wanted, pool=preferred, fell_back=False)
    fallback_tier = PoolTier.DEDICATED if wanted == PoolTier.SHARED else PoolTier.SHARED
    fallback = tuple(account for account in eligible if tier_of(account) == fallback_tier)
    return TierChoice(tier=fallback_tier, pool=fallback, fell_back=True)


def pick_account(pool: Sequence[AccountSnapshot], rng: random.Random) -> tuple[int, AccountSnapshot]:
    index = rng.randrange(len(pool))
    return index, pool[index]


def is_token_expired(account: AccountSnapshot, now_ms: int) -> bool:
    return account.expires_at <= now_ms
