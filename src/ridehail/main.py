#!/usr/bin/env python3
# src/ridehail/main.py
"""
Точка входа ядра заказа поездок.
Подключает PostgreSQL, Redis и RabbitMQ, запускает consumer уведомлений
и работает до сигнала остановки.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from ridehail.bootstrap import build_core
from ridehail.common.constants import TypeMsg
from ridehail.common.logger import log_error, log_info, setup_logging


# Флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None


def setup_signal_handlers() -> None:
    """Настраивает обработчики SIGINT и SIGTERM."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def main() -> None:
    """Собирает ядро и держит его запущенным до сигнала остановки."""
    from ridehail.config import settings

    setup_logging()
    setup_signal_handlers()

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск "
        f"({settings.system.ENVIRONMENT})",
        type_msg=TypeMsg.INFO,
    )

    core = await build_core()
    core.start()
    try:
        if _shutdown_event is not None:
            await _shutdown_event.wait()
    finally:
        await core.close()
        await log_info("Ядро остановлено", type_msg=TypeMsg.INFO)


def run() -> None:
    """Синхронная обёртка для console script."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        asyncio.run(log_error(f"Критическая ошибка запуска: {e}", exc_info=True))
        sys.exit(1)


if __name__ == "__main__":
    run()
