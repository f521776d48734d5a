from __future__ import annotations

from collections.abc import Callable, Mapping

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Insert, func

from cookie_lb.core.quota.snapshot import parse_model_list_snapshot
from cookie_lb.core.types import JsonValue
from cookie_lb.core.utils.time import utcnow
from cookie_lb.db.models import ModelQuota, QuotaConsumption, SharedQuotaPool


class QuotaRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_quota(self, cookie_id: str, model_name: str) -> float | None:
        row = await self._model_quota(cookie_id, model_name)
        return row.quota if row is not None else None

    async def is_model_available(self, cookie_id: str, model_name: str) -> bool:
        # No row yet means the upstream has not reported on this model; treat it as usable.
        quota = await self.get_quota(cookie_id, model_name)
        return quota is None or quota > 0

    async def shared_pool_balance(self, user_id: str, model_name: str) -> float | None:
        result = await self._session.execute(
            select(SharedQuotaPool.quota).where(
                SharedQuotaPool.user_id == user_id,
                SharedQuotaPool.model_name == model_name,
            )
        )
        return result.scalar_one_or_none()

    async def set_shared_pool_balance(self, user_id: str, model_name: str, quota: float) -> None:
        insert_fn = self._insert_for_dialect()
        statement = insert_fn(SharedQuotaPool).values(user_id=user_id, model_name=model_name, quota=quota)
        statement = statement.on_conflict_do_update(
            index_elements=[SharedQuotaPool.user_id, SharedQuotaPool.model_name],
            set_={
                "quota": quota,
                "updated_at": func.now(),
            },
        )
        await self._session.execute(statement)
        await self._session.commit()

    async def apply_model_list_snapshot(self, cookie_id: str, models: Mapping[str, JsonValue] | None) -> int:
        updates = parse_model_list_snapshot(models)
        if not updates:
            return 0
        insert_fn = self._insert_for_dialect()
        now = utcnow()
        for update in updates:
            statement = insert_fn(ModelQuota).values(
                cookie_id=cookie_id,
                model_name=update.model_name,
                quota=update.quota,
                reset_at=update.reset_at,
                updated_at=now,
            )
            statement = statement.on_conflict_do_update(
                index_elements=[ModelQuota.cookie_id, ModelQuota.model_name],
                set_={
                    "quota": statement.excluded.quota,
                    "reset_at": statement.excluded.reset_at,
                    "updated_at": statement.excluded.updated_at,
                },
            )
            await self._session.execute(statement)
        await self._session.commit()
        return len(updates)

    async def record_consumption(
        self,
        user_id: str,
        cookie_id: str,
        model_name: str,
        quota_before: float,
        quota_after: float,
        is_shared: int,
    ) -> QuotaConsumption:
        entry = QuotaConsumption(
            user_id=user_id,
            cookie_id=cookie_id,
            model_name=model_name,
            quota_before=quota_before,
            quota_after=quota_after,
            # Signed delta, never clamped.
            quota_consumed=quota_before - quota_after,
            is_shared=is_shared,
            consumed_at=utcnow(),
        )
        self._session.add(entry)
        await self._session.commit()
        await self._session.refresh(entry)
        return entry

    async def list_consumption(self, user_id: str) -> list[QuotaConsumption]:
        result = await self._session.execute(
            select(QuotaConsumption)
            .where(QuotaConsumption.user_id == user_id)
            .order_by(QuotaConsumption.consumed_at, QuotaConsumption.id)
        )
        return list(result.scalars().all())

    async def _model_quota(self, cookie_id: str, model_name: str) -> ModelQuota | None:
        result = await self._session.execute(
            select(ModelQuota).where(ModelQuota.cookie_id == cookie_id, ModelQuota.model_name == model_name)
        )
        return result.scalar_one_or_none()

    def _insert_for_dialect(self) -> Callable[..., Insert]:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise RuntimeError(f"Quota upsert unsupported for dialect={dialect!r}")
