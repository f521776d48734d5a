from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, DateTime, Float, Index, Integer, LargeBinary, String, UniqueConstraint, func
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class AccountStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class Account(Base):
    __tablename__ = "accounts"

    cookie_id: Mapped[str] = mapped_column(String, primary_key=True)
    # NULL for shared accounts that were never bound to an owner.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_shared: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)

    access_token_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    refresh_token_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[AccountStatus] = mapped_column(
        SqlEnum(AccountStatus, name="account_status", validate_strings=True),
        default=AccountStatus.ENABLED,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


class ModelQuota(Base):
    __tablename__ = "model_quotas"
    __table_args__ = (UniqueConstraint("cookie_id", "model_name", name="uq_model_quotas_cookie_model"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cookie_id: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    quota: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reset_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SharedQuotaPool(Base):
    __tablename__ = "shared_quota_pool"
    __table_args__ = (UniqueConstraint("user_id", "model_name", name="uq_shared_quota_pool_user_model"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    quota: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class QuotaConsumption(Base):
    __tablename__ = "quota_consumption_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    cookie_id: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    quota_before: Mapped[float] = mapped_column(Float, nullable=False)
    quota_after: Mapped[float] = mapped_column(Float, nullable=False)
    quota_consumed: Mapped[float] = mapped_column(Float, nullable=False)
    is_shared: Mapped[int] = mapped_column(Integer, nullable=False)
    consumed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


Index("idx_accounts_owner_shared", Account.user_id, Account.is_shared)
Index("idx_model_quotas_cookie", ModelQuota.cookie_id)
Index("idx_consumption_user_time", QuotaConsumption.user_id, QuotaConsumption.consumed_at)
