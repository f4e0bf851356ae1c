# tests/config/test_loader.py
"""
Тесты для модуля загрузки конфигурации.
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError as PydanticValidationError

from ridehail.config.loader import (
    DatabaseSettings,
    RedisSettings,
    Settings,
    SettlementSettings,
    get_config_path,
    get_project_root,
    load_config_json,
)

_ENV_OVERRIDES = (
    "ENVIRONMENT", "LOG_LEVEL",
    "DB_HOST", "DB_PORT", "DB_NAME", "DB_USER",
    "REDIS_HOST", "REDIS_PORT",
    "PAYMENT_GATEWAY_URL",
)


@pytest.fixture
def use_temp_config(monkeypatch: pytest.MonkeyPatch, temp_config_file: Path) -> Path:
    """Подменяет путь к config.json и убирает переопределения из окружения."""
    monkeypatch.setenv("RIDEHAIL_CONFIG_PATH", str(temp_config_file))
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return temp_config_file


class TestPaths:
    """Тесты для путей проекта."""

    def test_project_root(self) -> None:
        """Проверяет, что корень содержит src и config."""
        root = get_project_root()
        assert (root / "src" / "ridehail").exists()
        assert (root / "config").exists()

    def test_config_path_override(self, use_temp_config: Path) -> None:
        """Проверяет переопределение пути через RIDEHAIL_CONFIG_PATH."""
        assert get_config_path() == use_temp_config

    def test_default_config_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Проверяет путь по умолчанию."""
        monkeypatch.delenv("RIDEHAIL_CONFIG_PATH", raising=False)
        path = get_config_path()
        assert path.name == "config.json"
        assert path.parent.name == "config"

    def test_missing_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Проверяет FileNotFoundError для отсутствующего файла."""
        monkeypatch.setenv("RIDEHAIL_CONFIG_PATH", str(tmp_path / "nope.json"))
        with pytest.raises(FileNotFoundError):
            load_config_json()


class TestSettingsFromConfigJson:
    """Тесты для Settings.from_config_json()."""

    def test_sections(self, use_temp_config: Path, mock_config: dict[str, Any]) -> None:
        """Проверяет разбор всех секций."""
        settings = Settings.from_config_json()

        assert settings.system.PROJECT_NAME == "ridehail_test"
        assert settings.system.ENVIRONMENT == "test"
        assert settings.database.DB_HOST == "db.local"
        assert settings.database.DB_PORT == 5433
        assert settings.redis.REDIS_NAMESPACE == "ridehail_test"
        assert settings.redis_ttl.RIDE_CANDIDATES_TTL == 30
        assert settings.rabbitmq.RABBITMQ_EXCHANGE == "ridehail.test"
        assert settings.fares.BASE_FARE == 40.0
        assert settings.fares.CLASS_MULTIPLIERS == mock_config["CLASS_MULTIPLIERS"]
        assert settings.matching.MAX_CANDIDATES == 3
        assert settings.matching.LOCATION_STALENESS_SEC == 120
        assert settings.matching.ENFORCE_CANDIDATE_LIST is True
        assert settings.settlement.PLATFORM_COMMISSION_RATE == Decimal("0.15")
        assert settings.notifications.NOTIFICATION_QUEUE_SIZE == 50

    def test_defaults_for_missing_keys(self, use_temp_config: Path) -> None:
        """Проверяет значения по умолчанию для отсутствующих ключей."""
        settings = Settings.from_config_json()

        assert settings.redis_ttl.RIDE_LOCATION_TTL == 300
        assert settings.fares.CURRENCY == "INR"
        assert settings.payment_gateway.GATEWAY_TIMEOUT == 10.0

    def test_env_overrides_host(self, use_temp_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Проверяет переопределение адреса из окружения."""
        monkeypatch.setenv("DB_HOST", "pg.internal")
        assert Settings.from_config_json().database.DB_HOST == "pg.internal"

    def test_comment_keys_ignored(self, use_temp_config: Path, mock_config: dict[str, Any]) -> None:
        """Проверяет, что ключи _comment_ не мешают разбору."""
        mock_config["_comment_fares"] = "Тарифы"
        use_temp_config.write_text(json.dumps(mock_config, ensure_ascii=False))

        assert Settings.from_config_json().fares.PER_KM_RATE == 10.0


class TestSectionModels:
    """Тесты для моделей секций."""

    def test_database_dsn(self) -> None:
        """Проверяет сборку DSN."""
        db = DatabaseSettings(DB_HOST="h", DB_PORT=1, DB_NAME="n", DB_USER="u", DB_PASSWORD="p")
        assert db.dsn == "postgresql://u:p@h:1/n"

    def test_redis_url_with_password(self) -> None:
        """Проверяет URL Redis с паролем."""
        redis = RedisSettings(REDIS_HOST="r", REDIS_PORT=2, REDIS_DB=3, REDIS_PASSWORD="secret")
        assert redis.url == "redis://:secret@r:2/3"

    def test_commission_parsed_exactly(self) -> None:
        """Проверяет перевод float в Decimal без двоичного хвоста."""
        assert SettlementSettings(PLATFORM_COMMISSION_RATE=0.1).PLATFORM_COMMISSION_RATE == Decimal("0.1")

    @pytest.mark.parametrize("rate", [-0.01, 1.5])
    def test_commission_out_of_range(self, rate: float) -> None:
        """Проверяет ошибку для комиссии вне [0, 1]."""
        with pytest.raises(PydanticValidationError):
            SettlementSettings(PLATFORM_COMMISSION_RATE=rate)
