from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cookie_lb.core.balancer import AccountSnapshot
from cookie_lb.core.crypto import TokenCipher
from cookie_lb.db.models import Account, AccountStatus


class AccountsRepository:
    def __init__(self, session: AsyncSession, cipher: TokenCipher | None = None) -> None:
        self._session = session
        self._cipher = cipher or TokenCipher()

    async def list_available(self, user_id: str | None, is_shared: int) -> list[AccountSnapshot]:
        stmt = select(Account).where(Account.status == AccountStatus.ENABLED, Account.is_shared == is_shared)
        if not is_shared:
            # Dedicated accounts belong to exactly one user; shared ones ignore ownership.
            if user_id is None:
                return []
            stmt = stmt.where(Account.user_id == user_id)
        result = await self._session.execute(stmt.order_by(Account.created_at, Account.cookie_id))
        return [self._snapshot(account) for account in result.scalars().all()]

    async def get_by_cookie_id(self, cookie_id: str) -> AccountSnapshot | None:
        account = await self._session.get(Account, cookie_id)
        if account is None:
            return None
        return self._snapshot(account)

    async def add(
        self,
        cookie_id: str,
        *,
        user_id: str | None,
        is_shared: int,
        access_token: str,
        refresh_token: str,
        expires_at: int,
        name: str | None = None,
    ) -> AccountSnapshot:
        account = Account(
            cookie_id=cookie_id,
            user_id=user_id,
            is_shared=is_shared,
            name=name,
            access_token_encrypted=self._cipher.encrypt(access_token),
            refresh_token_encrypted=self._cipher.encrypt(refresh_token),
            expires_at=expires_at,
            status=AccountStatus.ENABLED,
        )
        self._session.add(account)
        await self._session.commit()
        await self._session.refresh(account)
        return self._snapshot(account)

    async def update_token(self, cookie_id: str, access_token: str, expires_at: int) -> bool:
        result = await self._session.execute(
            update(Account)
            .where(Account.cookie_id == cookie_id)
            .values(access_token_encrypted=self._cipher.encrypt(access_token), expires_at=expires_at)
            .returning(Account.cookie_id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def update_status(self, cookie_id: str, status: AccountStatus) -> bool:
        result = await self._session.execute(
            update(Account).where(Account.cookie_id == cookie_id).values(status=status).returning(Account.cookie_id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    def _snapshot(self, account: Account) -> AccountSnapshot:
        return AccountSnapshot(
            cookie_id=account.cookie_id,
            user_id=account.user_id,
            is_shared=account.is_shared,
            access_token=self._cipher.decrypt(account.access_token_encrypted),
            refresh_token=self._cipher.decrypt(account.refresh_token_encrypted),
            expires_at=account.expires_at,
            status=account.status,
        )
