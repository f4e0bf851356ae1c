"""
Модуль пользователей.
"""

from ridehail.core.users.directory import (
    InMemoryUserDirectory,
    PostgresUserDirectory,
    UserDirectory,
    UserRecord,
)

__all__ = [
    "UserRecord",
    "UserDirectory",
    "PostgresUserDirectory",
    "InMemoryUserDirectory",
]
