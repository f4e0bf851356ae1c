"""
Клиент внешнего платёжного шлюза (card/upi).

Контракт шлюза: POST {url}/charges с JSON
{"reference", "amount", "currency", "method", "customer_id"};
ответ {"status": "succeeded" | "failed", "transaction_id", "message"}.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

import httpx

from ridehail.common.constants import PaymentMethod, TypeMsg
from ridehail.common.logger import log_error, log_info


@dataclass
class GatewayResult:
    """Результат списания через шлюз."""
    success: bool
    transaction_id: str | None = None
    error_message: str | None = None


class PaymentGateway(ABC):
    """Внешний платёжный шлюз."""

    @abstractmethod
    async def charge(
        self,
        reference: str,
        amount: Decimal,
        method: PaymentMethod,
        customer_id: str,
    ) -> GatewayResult:
        """Списывает сумму с карты или UPI клиента."""


class HttpPaymentGateway(PaymentGateway):
    """Шлюз по HTTP (httpx)."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        currency: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Args:
            base_url: Адрес шлюза (берётся из конфига, если None)
            api_key: Ключ API (берётся из конфига, если None)
            timeout: Таймаут запроса, секунды
            currency: Валюта списания
            client: Готовый HTTP клиент (для тестов)
        """
        if base_url is None or api_key is None:
            from ridehail.config import settings
            base_url = base_url or settings.payment_gateway.GATEWAY_URL
            api_key = settings.payment_gateway.GATEWAY_API_KEY if api_key is None else api_key
            timeout = settings.payment_gateway.GATEWAY_TIMEOUT if timeout is None else timeout
            currency = currency or settings.fares.CURRENCY

        self._base_url = base_url.rstrip("/")
        self._currency = currency or "INR"
        self._client = client or httpx.AsyncClient(
            timeout=timeout or 10.0,
            headers={"Authorization": f"Bearer {api_key}"} if api_key else None,
        )

    async def close(self) -> None:
        """Закрывает HTTP клиент."""
        await self._client.aclose()

    async def charge(
        self,
        reference: str,
        amount: Decimal,
        method: PaymentMethod,
        customer_id: str,
    ) -> GatewayResult:
        try:
            response = await self._client.post(
                f"{self._base_url}/charges",
                json={
                    "reference": reference,
                    "amount": str(amount),
                    "currency": self._currency,
                    "method": method.value,
                    "customer_id": customer_id,
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            await log_error(f"Ошибка обращения к платёжному шлюзу ({reference}): {e}")
            return GatewayResult(success=False, error_message=str(e))

        if data.get("status") != "succeeded":
            message = data.get("message") or "платёж отклонён"
            await log_info(f"Шлюз отклонил платёж {reference}: {message}", type_msg=TypeMsg.WARNING)
            return GatewayResult(success=False, transaction_id=data.get("transaction_id"), error_message=message)

        return GatewayResult(success=True, transaction_id=data.get("transaction_id"))
