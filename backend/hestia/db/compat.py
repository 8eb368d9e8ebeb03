"""
DB type compatibility layer
===========================
PostgreSQL: native UUID, JSONB, BIGINT identity
SQLite (tests): VARCHAR(36), JSON, INTEGER rowid

SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
columns; ``as_utc`` normalises values read from either dialect.
"""
import uuid as _uuid_mod
from datetime import UTC, datetime

from sqlalchemy import JSON, BigInteger, Integer, String
from sqlalchemy import types as _sa_types
from sqlalchemy.dialects import postgresql as _pg


class UUID(_sa_types.TypeDecorator):
    """UUID -> VARCHAR(36) TypeDecorator (SQLite/PostgreSQL compatible).

    Native UUID column on PostgreSQL, VARCHAR(36) on SQLite. Accepts both
    ``str`` and ``uuid.UUID`` on the way in.
    """
    impl = String(36)
    cache_ok = True

    def __init__(self, *args, as_uuid: bool = True, **kwargs):
        self.as_uuid = as_uuid
        super().__init__()

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_pg.UUID(as_uuid=False))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if self.as_uuid:
            return _uuid_mod.UUID(str(value))
        return str(value)


JSONB = JSON().with_variant(_pg.JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
