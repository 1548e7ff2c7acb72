from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.domain.accounts import TIER_FREE, TIER_PRO, CounterOp
from chatgate.domain.models import Account


COUNTER_FIELDS = frozenset({"free_messages_remaining", "pro_messages_used_this_month"})


async def get_account(session: AsyncSession, account_id: str) -> Account | None:
    result = await session.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def add_account(
    session: AsyncSession,
    account_id: str,
    *,
    free_messages_remaining: int | None = None,
    subscription_tier: str = TIER_FREE,
    subscription_expiry: datetime | None = None,
    pro_messages_used_this_month: int = 0,
    push_token: str | None = None,
) -> Account:
    account = Account(
        id=account_id,
        free_messages_remaining=free_messages_remaining,
        subscription_tier=subscription_tier,
        subscription_expiry=subscription_expiry,
        pro_messages_used_this_month=pro_messages_used_this_month,
        push_token=push_token,
    )
    session.add(account)
    await session.flush()
    return account


async def apply_counter_op(session: AsyncSession, account_id: str, op: CounterOp) -> int | None:
    # Single UPDATE ... RETURNING so the increment and the read-back are one atomic step.
    if op.field not in COUNTER_FIELDS:
        raise ValueError(f"Unsupported counter field: {op.field}")
    column = getattr(Account, op.field)
    stmt = update(Account).where(Account.id == account_id)
    if op.value is not None:
        stmt = stmt.values({op.field: op.value})
    elif op.delta is not None:
        stmt = stmt.values({op.field: column + op.delta})
    else:
        raise ValueError("CounterOp needs either a delta or a value")
    stmt = stmt.returning(column).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def set_subscription(
    session: AsyncSession,
    account_id: str,
    *,
    tier: str,
    expiry: datetime | None,
) -> bool:
    stmt = (
        update(Account)
        .where(Account.id == account_id)
        .values(subscription_tier=tier, subscription_expiry=expiry)
        .returning(Account.id)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def reset_pro_usage(session: AsyncSession) -> list[str]:
    # One statement selects and resets every pro account, so the reset is all-or-nothing.
    stmt = (
        update(Account)
        .where(Account.subscription_tier == TIER_PRO)
        .values(pro_messages_used_this_month=0)
        .returning(Account.id)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
