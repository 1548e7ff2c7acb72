from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatgate.domain.accounts import TIER_FREE, AccountRecord, CounterOp, record_from_row
from chatgate.persistence.db import get_session_factory
from chatgate.persistence.repos import accounts as accounts_repo


class AccountStore:
    """Typed access to account records.

    Every method runs in its own short transaction so no connection is held while a
    request waits on upstream bytes. Only single-field updates are atomic; there is no
    cross-call locking between the proxy, the webhook and the reset job.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def get(self, account_id: str) -> AccountRecord | None:
        async with self._sessions()() as session:
            row = await accounts_repo.get_account(session, account_id)
            return record_from_row(row) if row is not None else None

    async def create(
        self,
        account_id: str,
        *,
        free_messages_remaining: int | None = None,
        subscription_tier: str = TIER_FREE,
        subscription_expiry: datetime | None = None,
        pro_messages_used_this_month: int = 0,
        push_token: str | None = None,
    ) -> AccountRecord:
        async with self._sessions()() as session, session.begin():
            row = await accounts_repo.add_account(
                session,
                account_id,
                free_messages_remaining=free_messages_remaining,
                subscription_tier=subscription_tier,
                subscription_expiry=subscription_expiry,
                pro_messages_used_this_month=pro_messages_used_this_month,
                push_token=push_token,
            )
            return record_from_row(row)

    async def apply_counter_op(self, account_id: str, op: CounterOp) -> int | None:
        # Returns the post-update value, or None when the account is gone.
        async with self._sessions()() as session, session.begin():
            return await accounts_repo.apply_counter_op(session, account_id, op)

    async def set_subscription(self, account_id: str, *, tier: str, expiry: datetime | None) -> bool:
        async with self._sessions()() as session, session.begin():
            return await accounts_repo.set_subscription(session, account_id, tier=tier, expiry=expiry)

    async def reset_pro_usage(self) -> list[str]:
        async with self._sessions()() as session, session.begin():
            return await accounts_repo.reset_pro_usage(session)


_account_store: AccountStore | None = None


def get_account_store() -> AccountStore:
    # Cache the store for reuse across requests.
    global _account_store
    if _account_store is None:
        _account_store = AccountStore()
    return _account_store


def reset_account_store() -> None:
    # Reset cached services for deterministic tests.
    global _account_store
    _account_store = None
