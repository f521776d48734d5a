from cookie_lb.core.balancer.logic import (
    AccountSnapshot,
    PoolTier,
    TierChoice,
    choose_tier,
    is_token_expired,
    order_candidates,
    pick_account,
    preferred_tier,
    tier_of,
)

__all__ = [
    "AccountSnapshot",
    "PoolTier",
    "TierChoice",
    "choose_tier",
    "is_token_expired",
    "order_candidates",
    "pick_account",
    "preferred_tier",
    "tier_of",
]
