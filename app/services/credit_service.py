"""
Credit ledger - per-user balance plus an append-only transaction log.

Balances are created lazily with a signup bonus and are only mutated by
earn/spend, each of which appends a CreditTransaction in the same commit.

Spends are serialized per user inside this process with an asyncio.Lock,
and the decrement itself is a conditional UPDATE that refuses to cross the
floor, so a second process racing on the same user cannot overshoot it.
"""

import asyncio
import json
import logging
import weakref
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import async_session_maker, CreditBalance, CreditTransaction, TransactionType
from app.services.pricing import (
    SIGNUP_BONUS, MAX_NEGATIVE_BALANCE, MIN_BALANCE_FOR_NEW_WORK,
    calculate_credit_cost, calculate_actual_cost,
)

logger = logging.getLogger(__name__)

MAX_SPEND_ATTEMPTS = 3


class InsufficientCreditError(Exception):
    """A spend would take the balance below the ledger floor."""

    def __init__(self, user_id: str, amount: Decimal, current: Decimal, floor: Decimal = MAX_NEGATIVE_BALANCE):
        self.user_id = user_id
        self.amount = amount
        self.current = current
        self.floor = floor
        super().__init__(
            f"Insufficient credits for user {user_id}: balance {current}, "
            f"spend {amount}, floor {floor}"
        )


class StorageConflictError(Exception):
    """The conditional balance update lost a race with another writer."""


class CreditLedger:
    """Owns credit balances. Every mutation opens and commits its own session."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = async_session_maker):
        self._session_factory = session_factory
        # A lock lives only while some caller holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            # Locks cannot be shared across event loops
            self._loop = loop
            self._locks = weakref.WeakValueDictionary()
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @staticmethod
    async def _fetch(db: AsyncSession, user_id: str) -> Optional[CreditBalance]:
        result = await db.execute(
            select(CreditBalance).where(CreditBalance.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _get_or_create(self, user_id: str) -> CreditBalance:
        # Caller holds the user's lock
        async with self._session_factory() as db:
            balance = await self._fetch(db, user_id)
            if balance is not None:
                return balance

            balance = CreditBalance(
                user_id=user_id,
                current=SIGNUP_BONUS,
                lifetime_earned=SIGNUP_BONUS,
                lifetime_spent=Decimal("0"),
            )
            db.add(balance)
            db.add(CreditTransaction(
                user_id=user_id,
                type=TransactionType.BONUS.value,
                amount=SIGNUP_BONUS,
                description=f"Welcome bonus - {int(SIGNUP_BONUS):,} credits",
            ))
            try:
                await db.commit()
            except IntegrityError:
                # Another process created it first
                await db.rollback()
                balance = await self._fetch(db, user_id)
                if balance is None:
                    raise
                return balance

            logger.info(f"Created credit balance for user {user_id} with {SIGNUP_BONUS} bonus")
            return balance

    async def get_or_create_balance(self, user_id: str) -> CreditBalance:
        """Return the user's balance, seeding it with the signup bonus on first access."""
        async with self._lock_for(user_id):
            return await self._get_or_create(user_id)

    async def earn(
        self,
        user_id: str,
        amount: Decimal,
        type: TransactionType = TransactionType.PURCHASE,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> CreditBalance:
        """
        Credit the user's balance.

        When `reference` is given and a transaction with that reference
        already exists, nothing is changed (webhook redelivery).
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("earn amount must be positive")
        if type == TransactionType.USAGE:
            raise ValueError("usage entries are recorded through spend()")

        async with self._lock_for(user_id):
            await self._get_or_create(user_id)
            async with self._session_factory() as db:
                if reference:
                    existing = await db.execute(
                        select(CreditTransaction.id).where(CreditTransaction.reference == reference)
                    )
                    if existing.scalar_one_or_none() is not None:
                        logger.info(f"Skipping duplicate earn for user {user_id} (reference {reference})")
                        return await self._fetch(db, user_id)

                await db.execute(
                    update(CreditBalance)
                    .where(CreditBalance.user_id == user_id)
                    .values(
                        current=CreditBalance.current + amount,
                        lifetime_earned=CreditBalance.lifetime_earned + amount,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.add(CreditTransaction(
                    user_id=user_id,
                    type=TransactionType(type).value,
                    amount=amount,
                    description=description,
                    metadata_json=json.dumps(metadata, default=str) if metadata else None,
                    reference=reference,
                ))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info(f"Concurrent duplicate earn for user {user_id} (reference {reference})")
                    return await self._fetch(db, user_id)

                logger.info(f"User {user_id} earned {amount} credits ({type})")
                return await self._fetch(db, user_id)

    async def spend(
        self,
        user_id: str,
        amount: Decimal,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditBalance:
        """
        Debit the user's balance and record a usage transaction.

        Raises InsufficientCreditError without mutating anything when the
        balance would drop below MAX_NEGATIVE_BALANCE.
        """
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError("spend amount must not be negative")

        async with self._lock_for(user_id):
            await self._get_or_create(user_id)

            for attempt in range(1, MAX_SPEND_ATTEMPTS + 1):
                try:
                    return await self._try_spend(user_id, amount, description, metadata)
                except StorageConflictError:
                    logger.warning(
                        f"Lost balance update race for user {user_id} "
                        f"(spend {amount}, attempt {attempt}/{MAX_SPEND_ATTEMPTS})"
                    )

            async with self._session_factory() as db:
                balance = await self._fetch(db, user_id)
            current = balance.current if balance else Decimal("0")
            if current - amount < MAX_NEGATIVE_BALANCE:
                raise InsufficientCreditError(user_id, amount, current)
            raise StorageConflictError(
                f"Could not settle spend of {amount} for user {user_id} after {MAX_SPEND_ATTEMPTS} attempts"
            )

    async def _try_spend(
        self,
        user_id: str,
        amount: Decimal,
        description: str,
        metadata: Optional[Dict[str, Any]],
    ) -> CreditBalance:
        async with self._session_factory() as db:
            balance = await self._fetch(db, user_id)
            current = balance.current
            if current - amount < MAX_NEGATIVE_BALANCE:
                logger.info(
                    f"Rejected spend of {amount} for user {user_id}: balance {current}, "
                    f"floor {MAX_NEGATIVE_BALANCE}"
                )
                raise InsufficientCreditError(user_id, amount, current)

            result = await db.execute(
                update(CreditBalance)
                .where(
                    CreditBalance.user_id == user_id,
                    CreditBalance.current - amount >= MAX_NEGATIVE_BALANCE,
                )
                .values(
                    current=CreditBalance.current - amount,
                    lifetime_spent=CreditBalance.lifetime_spent + amount,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise StorageConflictError(f"Balance for user {user_id} changed during spend")

            db.add(CreditTransaction(
                user_id=user_id,
                type=TransactionType.USAGE.value,
                amount=-amount,
                description=description,
                metadata_json=json.dumps(metadata, default=str) if metadata else None,
            ))
            await db.commit()

            db.expire_all()
            return await self._fetch(db, user_id)

    async def charge_usage(
        self,
        user_id: str,
        input_tokens: int,
        output_tokens: int,
        description: str = "Chat message",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Decimal:
        """Price a generation and spend it. Returns the credit cost."""
        cost = calculate_credit_cost(input_tokens, output_tokens)
        if cost <= 0:
            return cost
        details = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "actual_cost_usd": str(calculate_actual_cost(input_tokens, output_tokens)),
        }
        if metadata:
            details.update(metadata)
        await self.spend(user_id, cost, description, details)
        return cost

    async def can_afford(self, user_id: str, amount: Decimal) -> bool:
        balance = await self.get_or_create_balance(user_id)
        return balance.current - Decimal(amount) >= MAX_NEGATIVE_BALANCE

    async def can_start_new_work(self, user_id: str) -> bool:
        """Stricter gate used before starting expensive work such as a new project."""
        balance = await self.get_or_create_balance(user_id)
        return balance.current >= MIN_BALANCE_FOR_NEW_WORK

    async def history(self, user_id: str, limit: int = 50) -> List[CreditTransaction]:
        """Transactions newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


# Singleton instance
_credit_ledger: Optional[CreditLedger] = None


def get_credit_ledger() -> CreditLedger:
    """Get the credit ledger singleton."""
    global _credit_ledger
    if _credit_ledger is None:
        _credit_ledger = CreditLedger()
    return _credit_ledger
