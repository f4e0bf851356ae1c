# src/ridehail/core/__init__.py
"""
Доменный слой.
Бизнес-логика подбора водителей, жизненного цикла поездки и расчётов.
Хранилища и внешние сервисы передаются в сервисы явно.
"""
