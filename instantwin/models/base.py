from sqlalchemy import BigInteger, DateTime, Integer
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from instantwin.db.metadata import metadata_obj
from instantwin.db.utils import ensure_utc

# BigInteger surrogate keys, with the Integer variant SQLite needs for autoincrement.
ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp stored and returned in UTC.

    SQLite keeps only the wall-clock part of a ``DateTime(timezone=True)``
    value, so every value is converted to UTC before it is bound.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Base(DeclarativeBase):
    metadata = metadata_obj
