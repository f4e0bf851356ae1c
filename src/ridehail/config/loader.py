"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные и адреса сервисов переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта (src/ridehail/config -> корень)."""
    return Path(__file__).resolve().parent.parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    override = os.getenv("RIDEHAIL_CONFIG_PATH")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "ridehail"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_FORMAT: str = "colored"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/ridehail.log"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "ridehail"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "ridehail"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RedisTTLSettings(BaseModel):
    """Время жизни записей в key-value хранилище (секунды)."""
    RIDE_TTL: int = 3600
    RIDE_CANDIDATES_TTL: int = 300
    RIDE_LOCATION_TTL: int = 300
    DRIVER_LOCATION_TTL: int = 300


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "ridehail.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class FareSettings(BaseModel):
    """Настройки тарифов."""
    BASE_FARE: float = 50.0
    PER_KM_RATE: float = 12.0
    PER_MINUTE_RATE: float = 2.0
    CLASS_MULTIPLIERS: dict[str, float] = Field(
        default_factory=lambda: {"economy": 1.0, "comfort": 1.2, "premium": 1.5}
    )
    AVERAGE_SPEED_KMH: float = 20.0
    CURRENCY: str = "INR"


class MatchingSettings(BaseModel):
    """Настройки подбора водителей."""
    MAX_MATCHING_DISTANCE_KM: float = 10.0
    MAX_CANDIDATES: int = 5
    LOCATION_STALENESS_SEC: int = 300
    ENFORCE_CANDIDATE_LIST: bool = False


class SettlementSettings(BaseModel):
    """Настройки расчётов с водителями."""
    PLATFORM_COMMISSION_RATE: Decimal = Decimal("0.10")

    @field_validator("PLATFORM_COMMISSION_RATE", mode="before")
    @classmethod
    def parse_rate(cls, v: Any) -> Decimal:
        """Переводит float из JSON в Decimal без двоичного хвоста."""
        rate = Decimal(str(v))
        if not Decimal("0") <= rate <= Decimal("1"):
            raise ValueError("Комиссия должна быть в диапазоне [0, 1]")
        return rate


class PaymentGatewaySettings(BaseModel):
    """Настройки внешнего платёжного шлюза (card/upi)."""
    GATEWAY_URL: str = "http://localhost:8090"
    GATEWAY_API_KEY: str = ""
    GATEWAY_TIMEOUT: float = 10.0

    @field_validator("GATEWAY_API_KEY", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает ключ из переменных окружения."""
        if not v:
            return os.getenv("PAYMENT_GATEWAY_API_KEY", "")
        return v


class NotificationSettings(BaseModel):
    """Настройки очереди уведомлений."""
    NOTIFICATION_QUEUE_SIZE: int = 1000


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    redis_ttl: RedisTTLSettings = Field(default_factory=RedisTTLSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    fares: FareSettings = Field(default_factory=FareSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    settlement: SettlementSettings = Field(default_factory=SettlementSettings)
    payment_gateway: PaymentGatewaySettings = Field(default_factory=PaymentGatewaySettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты и адреса переопределяются из переменных окружения.
        """
        data = {k: v for k, v in load_config_json().items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "ridehail"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=os.getenv("LOG_LEVEL", data.get("LOG_LEVEL", "DEBUG")),
                LOG_FORMAT=data.get("LOG_FORMAT", "colored"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/ridehail.log"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "ridehail")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=data.get("DB_RETRY_DELAY", 1.0),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", data.get("REDIS_PORT", 6379))),
                REDIS_DB=data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=data.get("REDIS_NAMESPACE", "ridehail"),
                REDIS_MAX_CONNECTIONS=data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            redis_ttl=RedisTTLSettings(
                RIDE_TTL=data.get("RIDE_TTL", 3600),
                RIDE_CANDIDATES_TTL=data.get("RIDE_CANDIDATES_TTL", 300),
                RIDE_LOCATION_TTL=data.get("RIDE_LOCATION_TTL", 300),
                DRIVER_LOCATION_TTL=data.get("DRIVER_LOCATION_TTL", 300),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=os.getenv("RABBITMQ_PASSWORD", data.get("RABBITMQ_PASSWORD", "guest")),
                RABBITMQ_VHOST=data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=data.get("RABBITMQ_EXCHANGE", "ridehail.events"),
                RABBITMQ_PREFETCH_COUNT=data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            fares=FareSettings(
                BASE_FARE=data.get("BASE_FARE", 50.0),
                PER_KM_RATE=data.get("PER_KM_RATE", 12.0),
                PER_MINUTE_RATE=data.get("PER_MINUTE_RATE", 2.0),
                CLASS_MULTIPLIERS=data.get(
                    "CLASS_MULTIPLIERS", {"economy": 1.0, "comfort": 1.2, "premium": 1.5}
                ),
                AVERAGE_SPEED_KMH=data.get("AVERAGE_SPEED_KMH", 20.0),
                CURRENCY=data.get("CURRENCY", "INR"),
            ),
            matching=MatchingSettings(
                MAX_MATCHING_DISTANCE_KM=data.get("MAX_MATCHING_DISTANCE_KM", 10.0),
                MAX_CANDIDATES=data.get("MAX_CANDIDATES", 5),
                LOCATION_STALENESS_SEC=data.get("LOCATION_STALENESS_SEC", 300),
                ENFORCE_CANDIDATE_LIST=data.get("ENFORCE_CANDIDATE_LIST", False),
            ),
            settlement=SettlementSettings(
                PLATFORM_COMMISSION_RATE=data.get("PLATFORM_COMMISSION_RATE", "0.10"),
            ),
            payment_gateway=PaymentGatewaySettings(
                GATEWAY_URL=os.getenv("PAYMENT_GATEWAY_URL", data.get("GATEWAY_URL", "http://localhost:8090")),
                GATEWAY_API_KEY=os.getenv("PAYMENT_GATEWAY_API_KEY", data.get("GATEWAY_API_KEY", "")),
                GATEWAY_TIMEOUT=data.get("GATEWAY_TIMEOUT", 10.0),
            ),
            notifications=NotificationSettings(
                NOTIFICATION_QUEUE_SIZE=data.get("NOTIFICATION_QUEUE_SIZE", 1000),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


settings = get_settings()
