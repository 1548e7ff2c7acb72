from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        # The monthly reset selects every pro account in one statement.
        Index("ix_accounts_subscription_tier", "subscription_tier"),
    )

    # Identity subject from the verified bearer token.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Nullable so first-use and corrupt counters can be healed on settlement.
    free_messages_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Written only by subscription webhook events.
    subscription_tier: Mapped[str] = mapped_column(
        String, nullable=False, default="free", server_default=text("'free'")
    )
    subscription_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pro_messages_used_this_month: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    # Device address for push notifications; absence suppresses notifications.
    push_token: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
