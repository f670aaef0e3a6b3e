"""PostgreSQL connection settings and the pool behind ``PostgresCalendarStore``.

Server coordinates come from the environment (``DATABASE_URL`` or the
``POSTGRES_*`` variables); which database, schema and pool size to use comes
from ``[calsync.db]``.  The same settings feed both the asyncpg pool and the
libpq URL handed to the Alembic migration runner.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import parse_qs, quote, unquote, urlparse

import asyncpg

if TYPE_CHECKING:
    from calsync.config import CalsyncConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
# asyncpg reports a server that refuses the SSL upgrade with this message.
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"
_SCHEMA_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def normalize_sslmode(value: str | None) -> str | None:
    """Return a libpq sslmode understood by asyncpg, or None when unset or invalid."""
    if value is None or not value.strip():
        return None
    normalized = value.strip().lower()
    if normalized not in _VALID_SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return normalized


def should_retry_with_ssl_disable(exc: Exception, sslmode: str | None) -> bool:
    """True when asyncpg lost the connection during the SSL upgrade and no mode was forced."""
    return (
        sslmode is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


@dataclass(frozen=True)
class ConnectionSettings:
    """How to reach the PostgreSQL server; the database name is chosen separately."""

    host: str = "localhost"
    port: int = 5432
    user: str = "calsync"
    password: str = "calsync"
    sslmode: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ConnectionSettings:
        """Parse a libpq URL; its database path is ignored."""
        parsed = urlparse(url)
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            user=unquote(parsed.username) if parsed.username else "calsync",
            password=unquote(parsed.password) if parsed.password else "calsync",
            sslmode=normalize_sslmode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        )

    @classmethod
    def from_env(cls) -> ConnectionSettings:
        """``DATABASE_URL`` when set, otherwise the ``POSTGRES_*`` variables."""
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            return cls.from_url(database_url)
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            user=os.environ.get("POSTGRES_USER", "calsync"),
            password=os.environ.get("POSTGRES_PASSWORD", "calsync"),
            sslmode=normalize_sslmode(os.environ.get("POSTGRES_SSLMODE")),
        )

    def dsn(self, database: str) -> str:
        """libpq URL for *database*, credentials percent-encoded, sslmode preserved."""
        userinfo = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{userinfo}@{self.host}:{self.port}/{quote(database, safe='')}"
        if self.sslmode is not None:
            url += f"?sslmode={self.sslmode}"
        return url

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.sslmode is not None:
            kwargs["ssl"] = self.sslmode
        return kwargs


class Database:
    """Provisions the calsync database and owns its asyncpg pool."""

    def __init__(
        self,
        db_name: str,
        *,
        settings: ConnectionSettings | None = None,
        schema: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        if schema is not None and _SCHEMA_NAME_PATTERN.fullmatch(schema) is None:
            raise ValueError(f"Invalid schema name: {schema!r}")
        self.db_name = db_name
        self.settings = settings or ConnectionSettings()
        self.schema = schema
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_config(cls, config: CalsyncConfig) -> Database:
        return cls(
            config.db_name,
            settings=ConnectionSettings.from_env(),
            schema=config.db_schema,
            min_pool_size=config.db_pool_min_size,
            max_pool_size=config.db_pool_max_size,
        )

    @property
    def dsn(self) -> str:
        return self.settings.dsn(self.db_name)

    async def _open(self, opener: Callable[..., Awaitable[T]], what: str, **kwargs: Any) -> T:
        try:
            return await opener(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.settings.sslmode):
                raise
            logger.info("Retrying PostgreSQL %s with ssl=disable after SSL upgrade loss", what)
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance database if missing."""
        conn = await self._open(
            asyncpg.connect, "provisioning", **self.settings.connect_kwargs("postgres")
        )
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE takes no bind parameters.
            safe_name = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{safe_name}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Open the pool, scoping ``search_path`` to the configured schema."""
        pool_kwargs = self.settings.connect_kwargs(self.db_name)
        pool_kwargs["min_size"] = self.min_pool_size
        pool_kwargs["max_size"] = self.max_pool_size
        if self.schema is not None:
            pool_kwargs["server_settings"] = {"search_path": f"{self.schema},public"}
        self.pool = await self._open(asyncpg.create_pool, "pool creation", **pool_kwargs)
        logger.info(
            "Connection pool created for %s (%d-%d connections)",
            self.db_name,
            self.min_pool_size,
            self.max_pool_size,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)
