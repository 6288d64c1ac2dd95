"""
Migration Runner - Runs Alembic migrations at startup and from `displex migrate`.

Only applies migrations when the database is behind head.
"""

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from displex.config import settings
from displex.observability.logging import get_logger

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def get_sync_database_url(url: str | None = None) -> str:
    """Get a synchronous database URL for migrations.

    Alembic's command API uses synchronous connections, so async driver
    names are swapped for their blocking counterparts.
    """
    url = url or settings.database_url
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


def _get_current_revision(engine: Engine) -> str | None:
    """Get the current database revision."""
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    """Get the head revision from migration scripts."""
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Raises RuntimeError when an upgrade fails so the caller refuses to start.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    try:
        alembic_cfg = Config(str(ALEMBIC_INI_PATH))
        sync_url = get_sync_database_url()
        alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))

        engine = create_engine(sync_url)

        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info("database_schema_up_to_date", revision=current)
                return

            logger.info("database_migration_starting", current=current, head=head)
            command.upgrade(alembic_cfg, "head")

            new_current = _get_current_revision(engine)
            logger.info("database_migration_complete", revision=new_current)

        finally:
            engine.dispose()

    except Exception as e:
        logger.error("database_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
