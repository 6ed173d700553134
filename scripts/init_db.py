from __future__ import annotations

from sqlalchemy import inspect

from instantwin.config import EngineSettings
from instantwin.db.engine import make_engine
from instantwin.logging_utils import configure_logging
from instantwin.models import Base


def create_tables(settings: EngineSettings) -> None:
    """Create every draw-engine table that does not exist yet."""
    engine = make_engine(
        settings.database_url, sqlite_busy_timeout=settings.sqlite_busy_timeout
    )
    Base.metadata.create_all(engine)


def print_tables(settings: EngineSettings) -> None:
    """Inspect the configured database and print all table names."""
    engine = make_engine(settings.database_url)
    insp = inspect(engine)
    print("Current tables:", ", ".join(sorted(insp.get_table_names())))


def main() -> None:
    """Create the schema for ``DB_URL`` and report the resulting tables."""
    settings = EngineSettings.from_env()
    configure_logging(settings.log_level)
    create_tables(settings)
    print_tables(settings)


if __name__ == "__main__":
    main()
