"""
Реестр кошельков и платежей.

Каждая проводка сериализуется по кошельку: в PostgreSQL через
SELECT ... FOR UPDATE, в памяти через asyncio.Lock кошелька. Баланс кошелька
всегда равен сумме его проводок со знаком, balance_after фиксирует
промежуточный итог.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable

import asyncpg

from ridehail.common.constants import PaymentStatus, ReferenceType, TransactionType
from ridehail.common.exceptions import AlreadyProcessed, InsufficientFunds, InvalidState, NotFound
from ridehail.common.helpers import generate_transaction_id, utc_now
from ridehail.core.payments.models import LedgerEntry, Payment, Wallet, WalletTransaction
from ridehail.infra.database import DatabaseManager, affected_rows
from ridehail.infra.locks import KeyedLocks


def _apply_entry(wallet: Wallet, entry: LedgerEntry) -> Wallet:
    """
    Новое состояние кошелька после проводки.

    Raises:
        InsufficientFunds: списание больше баланса
    """
    if entry.type == TransactionType.DEBIT:
        if wallet.balance < entry.amount:
            raise InsufficientFunds(
                f"Недостаточно средств в кошельке {wallet.user_id}",
                user_id=wallet.user_id,
                balance=str(wallet.balance),
                required=str(entry.amount),
            )
        balance = wallet.balance - entry.amount
    else:
        balance = wallet.balance + entry.amount

    total_earnings = wallet.total_earnings
    total_spent = wallet.total_spent
    if entry.reference_type == ReferenceType.EARNINGS:
        total_earnings += entry.amount
    elif entry.reference_type == ReferenceType.RIDE_PAYMENT and entry.type == TransactionType.DEBIT:
        total_spent += entry.amount

    return Wallet(
        user_id=wallet.user_id,
        balance=balance,
        total_earnings=total_earnings,
        total_spent=total_spent,
    )


class LedgerRepository(ABC):
    """Кошельки, проводки и платежи."""

    @abstractmethod
    async def get_wallet(self, user_id: str) -> Wallet:
        """Кошелёк пользователя (создаётся с нулевым балансом при первом обращении)."""

    @abstractmethod
    async def post(self, entry: LedgerEntry) -> WalletTransaction:
        """Применяет одну проводку."""

    @abstractmethod
    async def list_transactions(self, user_id: str) -> list[WalletTransaction]:
        """Проводки кошелька в порядке применения."""

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Payment | None:
        """Платёж по идентификатору."""

    @abstractmethod
    async def get_payment_by_ride(self, ride_id: str) -> Payment | None:
        """Платёж по поездке."""

    @abstractmethod
    async def reserve_payment(self, payment: Payment) -> Payment:
        """
        Резервирует поездку под платёж: сохраняет запись в статусе pending.
        Выполняется до любого внешнего списания.

        Raises:
            AlreadyProcessed: по этой поездке уже есть платёж или резерв
        """

    @abstractmethod
    async def release_payment(self, payment_id: str) -> None:
        """Снимает резерв pending (после отказа шлюза или нехватки средств)."""

    @abstractmethod
    async def record_payment(self, payment: Payment, entries: Iterable[LedgerEntry]) -> Payment:
        """
        Атомарно применяет проводки и переводит платёж в completed.
        Зарезервированная запись обновляется, иначе вставляется новая.
        Либо применяется всё, либо ничего.

        Raises:
            AlreadyProcessed: по поездке уже есть другой платёж, либо этот
                платёж уже не в статусе pending
            InsufficientFunds: какое-либо списание больше баланса
        """

    @abstractmethod
    async def refund_payment(
        self,
        payment_id: str,
        amount: Decimal,
        reason: str | None,
        entry: LedgerEntry,
    ) -> Payment:
        """
        Атомарно помечает платёж возвращённым и зачисляет возврат.

        Raises:
            NotFound: платёж не найден
            InvalidState: платёж не в статусе completed
        """


# =============================================================================
# POSTGRESQL
# =============================================================================

_PAYMENT_COLUMNS = """
    payment_id, ride_id, payer_id, payee_id, amount, driver_share, commission,
    method, status, gateway_transaction_id, refunded_amount, refund_reason,
    created_at, refunded_at
"""

_PAYMENT_INSERT = f"""
    INSERT INTO payments ({_PAYMENT_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
"""


def _payment_args(payment: Payment) -> tuple[Any, ...]:
    return (
        payment.payment_id, payment.ride_id, payment.payer_id, payment.payee_id,
        payment.amount, payment.driver_share, payment.commission,
        payment.method.value, payment.status.value, payment.gateway_transaction_id,
        payment.refunded_amount, payment.refund_reason,
        payment.created_at, payment.refunded_at,
    )


class PostgresLedgerRepository(LedgerRepository):
    """Реестр в PostgreSQL."""

    def __init__(self, db: DatabaseManager, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    async def get_wallet(self, user_id: str) -> Wallet:
        async with self._db.transaction() as conn:
            return await self._lock_wallet(conn, user_id)

    async def post(self, entry: LedgerEntry) -> WalletTransaction:
        async with self._db.transaction() as conn:
            wallet = await self._lock_wallet(conn, entry.user_id)
            return await self._apply(conn, wallet, entry)

    async def list_transactions(self, user_id: str) -> list[WalletTransaction]:
        rows = await self._db.fetch(
            """
            SELECT transaction_id, user_id, type, amount, reference_type, reference_id,
                   description, balance_after, created_at
            FROM wallet_transactions
            WHERE user_id = $1
            ORDER BY id
            """,
            user_id,
        )
        return [WalletTransaction.model_validate(dict(row)) for row in rows]

    async def get_payment(self, payment_id: str) -> Payment | None:
        row = await self._db.fetchrow(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE payment_id = $1", payment_id)
        return Payment.model_validate(dict(row)) if row else None

    async def get_payment_by_ride(self, ride_id: str) -> Payment | None:
        row = await self._db.fetchrow(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE ride_id = $1", ride_id)
        return Payment.model_validate(dict(row)) if row else None

    async def reserve_payment(self, payment: Payment) -> Payment:
        pending = payment.model_copy(update={"status": PaymentStatus.PENDING})
        try:
            await self._db.execute(_PAYMENT_INSERT, *_payment_args(pending))
        except asyncpg.UniqueViolationError as e:
            raise AlreadyProcessed(
                f"Поездка {payment.ride_id} уже оплачена",
                ride_id=payment.ride_id,
            ) from e
        return pending

    async def release_payment(self, payment_id: str) -> None:
        await self._db.execute(
            "DELETE FROM payments WHERE payment_id = $1 AND status = $2",
            payment_id, PaymentStatus.PENDING.value,
        )

    async def record_payment(self, payment: Payment, entries: Iterable[LedgerEntry]) -> Payment:
        entries = list(entries)
        completed = payment.model_copy(update={"status": PaymentStatus.COMPLETED})
        try:
            async with self._db.transaction() as conn:
                # Кошельки блокируются в одном порядке во всех транзакциях
                wallets = {}
                for user_id in sorted({e.user_id for e in entries}):
                    wallets[user_id] = await self._lock_wallet(conn, user_id)

                for entry in entries:
                    await self._apply(conn, wallets[entry.user_id], entry)
                    wallets[entry.user_id] = _apply_entry(wallets[entry.user_id], entry)

                status = await conn.execute(
                    f"""
                    {_PAYMENT_INSERT}
                    ON CONFLICT (payment_id) DO UPDATE
                    SET status = EXCLUDED.status,
                        gateway_transaction_id = EXCLUDED.gateway_transaction_id
                    WHERE payments.status = '{PaymentStatus.PENDING.value}'
                    """,
                    *_payment_args(completed),
                )
                if not affected_rows(status):
                    raise AlreadyProcessed(
                        f"Платёж {payment.payment_id} уже проведён",
                        ride_id=payment.ride_id,
                    )
        except asyncpg.UniqueViolationError as e:
            raise AlreadyProcessed(
                f"Поездка {payment.ride_id} уже оплачена",
                ride_id=payment.ride_id,
            ) from e
        return completed

    async def refund_payment(
        self,
        payment_id: str,
        amount: Decimal,
        reason: str | None,
        entry: LedgerEntry,
    ) -> Payment:
        async with self._db.transaction() as conn:
            row = await conn.fetchrow(
                f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE payment_id = $1 FOR UPDATE",
                payment_id,
            )
            if row is None:
                raise NotFound(f"Платёж {payment_id} не найден", payment_id=payment_id)
            if row["status"] != PaymentStatus.COMPLETED.value:
                raise InvalidState(
                    f"Платёж {payment_id} в статусе {row['status']}, возврат невозможен",
                    payment_id=payment_id,
                )

            wallet = await self._lock_wallet(conn, entry.user_id)
            await self._apply(conn, wallet, entry)

            updated = await conn.fetchrow(
                f"""
                UPDATE payments
                SET status = $2, refunded_amount = $3, refund_reason = $4, refunded_at = $5
                WHERE payment_id = $1
                RETURNING {_PAYMENT_COLUMNS}
                """,
                payment_id, PaymentStatus.REFUNDED.value, amount, reason, self._clock(),
            )
        return Payment.model_validate(dict(updated))

    async def _lock_wallet(self, conn: Any, user_id: str) -> Wallet:
        """Создаёт кошелёк при необходимости и блокирует его строку до конца транзакции."""
        await conn.execute(
            "INSERT INTO wallets (user_id) VALUES ($1) ON CONFLICT (user_id) DO NOTHING",
            user_id,
        )
        row = await conn.fetchrow(
            """
            SELECT user_id, balance, total_earnings, total_spent
            FROM wallets WHERE user_id = $1
            FOR UPDATE
            """,
            user_id,
        )
        return Wallet.model_validate(dict(row))

    async def _apply(self, conn: Any, wallet: Wallet, entry: LedgerEntry) -> WalletTransaction:
        updated = _apply_entry(wallet, entry)
        await conn.execute(
            """
            UPDATE wallets
            SET balance = $2, total_earnings = $3, total_spent = $4, updated_at = NOW()
            WHERE user_id = $1
            """,
            updated.user_id, updated.balance, updated.total_earnings, updated.total_spent,
        )
        transaction = WalletTransaction(
            transaction_id=generate_transaction_id(),
            user_id=entry.user_id,
            type=entry.type,
            amount=entry.amount,
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
            description=entry.description,
            balance_after=updated.balance,
            created_at=self._clock(),
        )
        await conn.execute(
            """
            INSERT INTO wallet_transactions (
                transaction_id, user_id, type, amount, reference_type, reference_id,
                description, balance_after, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            transaction.transaction_id, transaction.user_id, transaction.type.value,
            transaction.amount, transaction.reference_type.value, transaction.reference_id,
            transaction.description, transaction.balance_after, transaction.created_at,
        )
        return transaction


# =============================================================================
# IN-PROCESS
# =============================================================================

class InMemoryLedgerRepository(LedgerRepository):
    """Реестр в памяти процесса (по одному asyncio.Lock на кошелёк и на поездку)."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._wallets: dict[str, Wallet] = {}
        self._transactions: dict[str, list[WalletTransaction]] = {}
        self._payments: dict[str, Payment] = {}
        self._payment_by_ride: dict[str, str] = {}
        self._locks = KeyedLocks()

    async def get_wallet(self, user_id: str) -> Wallet:
        return self._wallets.setdefault(user_id, Wallet(user_id=user_id))

    async def post(self, entry: LedgerEntry) -> WalletTransaction:
        async with self._locks.hold(f"wallet:{entry.user_id}"):
            return self._apply(entry)

    async def list_transactions(self, user_id: str) -> list[WalletTransaction]:
        return list(self._transactions.get(user_id, []))

    async def get_payment(self, payment_id: str) -> Payment | None:
        return self._payments.get(payment_id)

    async def get_payment_by_ride(self, ride_id: str) -> Payment | None:
        payment_id = self._payment_by_ride.get(ride_id)
        return self._payments.get(payment_id) if payment_id else None

    async def reserve_payment(self, payment: Payment) -> Payment:
        pending = payment.model_copy(update={"status": PaymentStatus.PENDING})
        async with self._locks.hold(f"ride:{payment.ride_id}"):
            if payment.ride_id in self._payment_by_ride:
                raise AlreadyProcessed(
                    f"Поездка {payment.ride_id} уже оплачена",
                    ride_id=payment.ride_id,
                )
            self._payments[payment.payment_id] = pending
            self._payment_by_ride[payment.ride_id] = payment.payment_id
        return pending

    async def release_payment(self, payment_id: str) -> None:
        payment = self._payments.get(payment_id)
        if payment is None:
            return
        async with self._locks.hold(f"ride:{payment.ride_id}"):
            current = self._payments.get(payment_id)
            if current is None or current.status != PaymentStatus.PENDING:
                return
            del self._payments[payment_id]
            if self._payment_by_ride.get(current.ride_id) == payment_id:
                del self._payment_by_ride[current.ride_id]

    async def record_payment(self, payment: Payment, entries: Iterable[LedgerEntry]) -> Payment:
        entries = list(entries)
        completed = payment.model_copy(update={"status": PaymentStatus.COMPLETED})
        keys = [f"ride:{payment.ride_id}", *(f"wallet:{e.user_id}" for e in entries)]
        async with self._locks.hold(*keys):
            existing_id = self._payment_by_ride.get(payment.ride_id)
            if existing_id is not None and (
                existing_id != payment.payment_id
                or self._payments[existing_id].status != PaymentStatus.PENDING
            ):
                raise AlreadyProcessed(
                    f"Поездка {payment.ride_id} уже оплачена",
                    ride_id=payment.ride_id,
                )

            # Сначала проверяем все проводки на копиях, затем применяем
            scratch: dict[str, Wallet] = {}
            for entry in entries:
                current = scratch.get(entry.user_id) or await self.get_wallet(entry.user_id)
                scratch[entry.user_id] = _apply_entry(current, entry)

            for entry in entries:
                self._apply(entry)

            self._payments[payment.payment_id] = completed
            self._payment_by_ride[payment.ride_id] = payment.payment_id
        return completed

    async def refund_payment(
        self,
        payment_id: str,
        amount: Decimal,
        reason: str | None,
        entry: LedgerEntry,
    ) -> Payment:
        async with self._locks.hold(f"payment:{payment_id}", f"wallet:{entry.user_id}"):
            payment = self._payments.get(payment_id)
            if payment is None:
                raise NotFound(f"Платёж {payment_id} не найден", payment_id=payment_id)
            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidState(
                    f"Платёж {payment_id} в статусе {payment.status.value}, возврат невозможен",
                    payment_id=payment_id,
                )

            self._apply(entry)
            refunded = payment.model_copy(update={
                "status": PaymentStatus.REFUNDED,
                "refunded_amount": amount,
                "refund_reason": reason,
                "refunded_at": self._clock(),
            })
            self._payments[payment_id] = refunded
        return refunded

    def _apply(self, entry: LedgerEntry) -> WalletTransaction:
        """Применяет проводку. Вызывать под блокировкой кошелька."""
        wallet = self._wallets.get(entry.user_id) or Wallet(user_id=entry.user_id)
        updated = _apply_entry(wallet, entry)
        transaction = WalletTransaction(
            transaction_id=generate_transaction_id(),
            user_id=entry.user_id,
            type=entry.type,
            amount=entry.amount,
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
            description=entry.description,
            balance_after=updated.balance,
            created_at=self._clock(),
        )
        self._wallets[entry.user_id] = updated
        self._transactions.setdefault(entry.user_id, []).append(transaction)
        return transaction
