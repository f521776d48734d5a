from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import AsyncContextManager

from cookie_lb.modules.accounts.repository import AccountsRepository
from cookie_lb.modules.quota.repository import QuotaRepository


@dataclass(slots=True)
class ProxyRepositories:
    accounts: AccountsRepository
    quotas: QuotaRepository


ProxyRepoFactory = Callable[[], AsyncContextManager[ProxyRepositories]]
