"""
Справочник пользователей: идентичность и роль.
Ядро только читает его, регистрация и аутентификация находятся снаружи.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from ridehail.common.constants import UserRole
from ridehail.common.exceptions import NotFound
from ridehail.infra.database import DatabaseManager


class UserRecord(BaseModel):
    """Пользователь платформы."""

    user_id: str
    role: UserRole
    name: str | None = None
    is_active: bool = True

    class Config:
        frozen = True
        from_attributes = True


class UserDirectory(ABC):
    """Поиск пользователей по идентификатору."""

    @abstractmethod
    async def get(self, user_id: str) -> UserRecord | None:
        """Пользователь или None."""

    async def require(self, user_id: str) -> UserRecord:
        """
        Пользователь, обязательно существующий и активный.

        Raises:
            NotFound: идентификатор не найден или учётная запись заблокирована
        """
        user = await self.get(user_id)
        if user is None or not user.is_active:
            raise NotFound(f"Пользователь {user_id} не найден", user_id=user_id)
        return user


class PostgresUserDirectory(UserDirectory):
    """Справочник пользователей в PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get(self, user_id: str) -> UserRecord | None:
        row = await self._db.fetchrow(
            "SELECT user_id, role, name, is_active FROM users WHERE user_id = $1",
            user_id,
        )
        return UserRecord.model_validate(dict(row)) if row else None


class InMemoryUserDirectory(UserDirectory):
    """Справочник пользователей в памяти процесса."""

    def __init__(self, users: list[UserRecord] | None = None) -> None:
        self._users = {u.user_id: u for u in users or []}

    def add(self, user: UserRecord) -> None:
        self._users[user.user_id] = user

    async def get(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)
