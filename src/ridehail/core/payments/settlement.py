"""
Расчёт по завершённой поездке.

Доля водителя (по умолчанию 90%) зачисляется в его кошелёк проводкой
earnings. Комиссия платформы отдельной проводкой не отражается: она равна
amount - driver_share и хранится только в записи Payment.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Callable

from ridehail.common.constants import (
    PaymentMethod,
    ReferenceType,
    RidePaymentStatus,
    RideStatus,
    TransactionType,
    TypeMsg,
)
from ridehail.common.exceptions import (
    AlreadyProcessed,
    InsufficientFunds,
    InvalidState,
    NotFound,
    PaymentGatewayError,
    Unauthorized,
    ValidationError,
)
from ridehail.common.helpers import generate_payment_id, to_money, utc_now
from ridehail.common.logger import log_info, log_warning
from ridehail.core.payments.gateway import PaymentGateway
from ridehail.core.payments.models import (
    LedgerEntry,
    Payment,
    SettlementSplit,
    Wallet,
    WalletTransaction,
)
from ridehail.core.payments.repository import LedgerRepository

if TYPE_CHECKING:
    from ridehail.core.rides.models import Ride
    from ridehail.core.rides.repository import RideRepository


class SettlementEngine:
    """Раздел стоимости поездки и проводки по кошелькам."""

    def __init__(
        self,
        ledger: LedgerRepository,
        rides: RideRepository,
        gateway: PaymentGateway | None = None,
        commission_rate: Decimal | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            ledger: Реестр кошельков и платежей
            rides: Репозиторий поездок (статус оплаты)
            gateway: Платёжный шлюз для card/upi
            commission_rate: Доля платформы (если None, из конфига)
            clock: Источник текущего времени
        """
        if commission_rate is None:
            from ridehail.config import settings
            commission_rate = settings.settlement.PLATFORM_COMMISSION_RATE

        self._ledger = ledger
        self._rides = rides
        self._gateway = gateway
        self._commission_rate = Decimal(str(commission_rate))
        self._clock = clock

    # =========================================================================
    # РАЗДЕЛ СТОИМОСТИ
    # =========================================================================

    def split(self, fare: int | Decimal) -> SettlementSplit:
        """
        Доля водителя и комиссия. В сумме всегда ровно fare.

        Args:
            fare: Стоимость поездки

        Returns:
            SettlementSplit
        """
        amount = to_money(fare)
        driver_share = to_money(amount * (Decimal("1") - self._commission_rate))
        return SettlementSplit(driver_share=driver_share, commission=amount - driver_share)

    # =========================================================================
    # РАСЧЁТ ПО ПОЕЗДКЕ
    # =========================================================================

    async def settle(self, ride: Ride, method: PaymentMethod | None = None) -> Payment:
        """
        Проводит оплату завершённой поездки.

        Сначала платёж резервируется записью pending (одна на поездку), и
        только после этого выполняется списание через шлюз. Конкурирующий
        расчёт той же поездки получает AlreadyProcessed до обращения к шлюзу.

        wallet: списание с кошелька пассажира; при нехватке средств ничего
        не применяется. card/upi: списание через шлюз до проводок.
        cash: только зачисление доли водителю.

        Raises:
            InvalidState: поездка не завершена
            AlreadyProcessed: платёж по поездке уже есть
            InsufficientFunds: не хватает средств в кошельке
            PaymentGatewayError: шлюз отклонил платёж или не настроен
        """
        if ride.status != RideStatus.COMPLETED or ride.actual_fare is None:
            raise InvalidState(
                f"Поездка {ride.ride_id} не завершена, расчёт невозможен",
                ride_id=ride.ride_id,
                status=ride.status.value,
            )

        method = PaymentMethod(method or ride.payment_method)
        amount = to_money(ride.actual_fare)
        split = self.split(amount)

        payment = Payment(
            payment_id=generate_payment_id(),
            ride_id=ride.ride_id,
            payer_id=ride.rider_id,
            payee_id=ride.driver_id,
            amount=amount,
            driver_share=split.driver_share,
            commission=split.commission,
            method=method,
            created_at=self._clock(),
        )
        await self._ledger.reserve_payment(payment)

        entries: list[LedgerEntry] = []
        try:
            if method == PaymentMethod.WALLET and amount > 0:
                entries.append(LedgerEntry(
                    user_id=ride.rider_id,
                    type=TransactionType.DEBIT,
                    amount=amount,
                    reference_type=ReferenceType.RIDE_PAYMENT,
                    reference_id=ride.ride_id,
                    description=f"Оплата поездки {ride.ride_id}",
                ))
            elif method in (PaymentMethod.CARD, PaymentMethod.UPI):
                transaction_id = await self._charge_gateway(ride, payment.payment_id, amount, method)
                payment = payment.model_copy(update={"gateway_transaction_id": transaction_id})

            if split.driver_share > 0:
                entries.append(LedgerEntry(
                    user_id=ride.driver_id,
                    type=TransactionType.CREDIT,
                    amount=split.driver_share,
                    reference_type=ReferenceType.EARNINGS,
                    reference_id=ride.ride_id,
                    description=f"Заработок за поездку {ride.ride_id}",
                ))

            recorded = await self._ledger.record_payment(payment, entries)
        except (InsufficientFunds, PaymentGatewayError) as e:
            # Денег не списано: резерв снимается, поездку можно оплатить повторно
            await self._ledger.release_payment(payment.payment_id)
            await self._rides.set_payment_status(ride.ride_id, RidePaymentStatus.FAILED)
            await log_warning(f"Оплата поездки {ride.ride_id} ({method.value}) отклонена: {e.message}")
            raise

        await self._rides.set_payment_status(ride.ride_id, RidePaymentStatus.PAID)
        await log_info(
            f"Поездка {ride.ride_id} оплачена ({method.value}): {amount}, "
            f"водителю {split.driver_share}, комиссия {split.commission}",
            type_msg=TypeMsg.INFO,
        )
        return recorded

    async def pay_ride(self, ride: Ride, payer_id: str, method: PaymentMethod) -> Payment:
        """
        Оплата поездки по запросу пассажира (повтор после неудачного авторасчёта).

        Raises:
            InvalidState: поездка не завершена
            Unauthorized: платит не пассажир этой поездки
        """
        if ride.status != RideStatus.COMPLETED:
            raise InvalidState(f"Поездка {ride.ride_id} не завершена", ride_id=ride.ride_id)
        if ride.rider_id != payer_id:
            raise Unauthorized(
                f"Пользователь {payer_id} не может оплатить поездку {ride.ride_id}",
                ride_id=ride.ride_id,
            )
        return await self.settle(ride, method)

    async def _charge_gateway(
        self,
        ride: Ride,
        payment_id: str,
        amount: Decimal,
        method: PaymentMethod,
    ) -> str | None:
        if self._gateway is None:
            raise PaymentGatewayError("Платёжный шлюз не настроен", method=method.value)

        result = await self._gateway.charge(payment_id, amount, method, ride.rider_id)
        if not result.success:
            raise PaymentGatewayError(
                f"Шлюз отклонил оплату поездки {ride.ride_id}: {result.error_message}",
                ride_id=ride.ride_id,
            )
        return result.transaction_id

    # =========================================================================
    # КОШЕЛЁК
    # =========================================================================

    async def top_up(self, user_id: str, amount: Decimal | int | str) -> WalletTransaction:
        """
        Пополнение кошелька (деньги уже получены внешним шлюзом).

        Raises:
            ValidationError: сумма не положительна
        """
        value = to_money(amount)
        if value <= 0:
            raise ValidationError("Сумма пополнения должна быть положительной", amount=str(amount))

        transaction = await self._ledger.post(LedgerEntry(
            user_id=user_id,
            type=TransactionType.CREDIT,
            amount=value,
            reference_type=ReferenceType.WALLET_TOPUP,
            description="Пополнение кошелька",
        ))
        await log_info(f"Кошелёк {user_id} пополнен на {value}", type_msg=TypeMsg.INFO)
        return transaction

    async def refund(
        self,
        payment_id: str,
        amount: Decimal | int | str | None = None,
        reason: str | None = None,
    ) -> Payment:
        """
        Возврат оплаты на кошелёк пассажира.

        Args:
            payment_id: Идентификатор платежа
            amount: Сумма возврата (по умолчанию вся сумма платежа)
            reason: Причина

        Raises:
            NotFound: платёж не найден
            ValidationError: сумма вне (0, amount]
            InvalidState: платёж уже возвращён
        """
        payment = await self._ledger.get_payment(payment_id)
        if payment is None:
            raise NotFound(f"Платёж {payment_id} не найден", payment_id=payment_id)

        value = payment.amount if amount is None else to_money(amount)
        if value <= 0 or value > payment.amount:
            raise ValidationError(
                f"Сумма возврата должна быть в диапазоне (0, {payment.amount}]",
                amount=str(value),
            )

        refunded = await self._ledger.refund_payment(
            payment_id,
            value,
            reason,
            LedgerEntry(
                user_id=payment.payer_id,
                type=TransactionType.CREDIT,
                amount=value,
                reference_type=ReferenceType.RIDE_REFUND,
                reference_id=payment.ride_id,
                description=reason or f"Возврат по поездке {payment.ride_id}",
            ),
        )
        await self._rides.set_payment_status(payment.ride_id, RidePaymentStatus.REFUNDED)
        await log_info(f"Возврат {value} по платежу {payment_id}", type_msg=TypeMsg.INFO)
        return refunded

    async def wallet(self, user_id: str) -> Wallet:
        return await self._ledger.get_wallet(user_id)

    async def transactions(self, user_id: str) -> list[WalletTransaction]:
        return await self._ledger.list_transactions(user_id)

    async def payment_for_ride(self, ride_id: str) -> Payment | None:
        return await self._ledger.get_payment_by_ride(ride_id)
