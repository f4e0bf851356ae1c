"""
Ядро сервиса заказа поездок: подбор водителей, жизненный цикл поездки,
расчёт стоимости и проводки по кошелькам.
"""

__version__ = "1.0.0"
