"""
Startup migrations.

The API applies pending Alembic revisions before it serves traffic
(RUN_MIGRATIONS_ON_STARTUP). Alembic works on blocking connections, so the
async driver in DATABASE_URL is swapped for its synchronous counterpart.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from stampledger.config import settings
from stampledger.exceptions import PersistenceError
from stampledger.observability.logging import get_logger

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
ALEMBIC_INI_PATH = PROJECT_ROOT / "alembic.ini"

SYNC_DRIVERS = {"+asyncpg": "+psycopg2", "+aiosqlite": ""}


def get_sync_database_url(url: str | None = None) -> str:
    """DATABASE_URL with its async driver replaced by a blocking one."""
    url = url or settings.database_url
    for async_driver, sync_driver in SYNC_DRIVERS.items():
        url = url.replace(async_driver, sync_driver)
    return url


def is_ephemeral(url: str) -> bool:
    """In-memory SQLite lives and dies with one connection; nothing to migrate."""
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:")


def build_config(sync_url: str, ini_path: Path = ALEMBIC_INI_PATH) -> Config:
    """Alembic config pinned to this checkout's scripts and the given URL."""
    alembic_cfg = Config(str(ini_path))
    alembic_cfg.set_main_option("script_location", str(ini_path.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    alembic_cfg.attributes["sync_url"] = sync_url
    return alembic_cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def run_migrations(url: str | None = None, ini_path: Path = ALEMBIC_INI_PATH) -> str | None:
    """
    Upgrade the schema to head.

    Returns:
        The revision the database is at afterwards (None when skipped)

    Raises:
        PersistenceError: Alembic failed; the app must not start
    """
    if not ini_path.exists():
        logger.warning("migrations_skipped", reason="alembic_ini_missing", path=str(ini_path))
        return None

    sync_url = get_sync_database_url(url)
    if is_ephemeral(sync_url):
        logger.info("migrations_skipped", reason="in_memory_database")
        return None

    alembic_cfg = build_config(sync_url, ini_path)
    head = ScriptDirectory.from_config(alembic_cfg).get_current_head()
    engine = create_engine(sync_url)
    try:
        current = _current_revision(engine)
        if current == head:
            logger.info("schema_up_to_date", revision=current)
            return current

        logger.info("migrations_starting", from_revision=current, to_revision=head)
        command.upgrade(alembic_cfg, "head")

        current = _current_revision(engine)
        logger.info("migrations_complete", revision=current)
        return current

    except Exception as e:
        logger.error("migrations_failed", error=str(e))
        raise PersistenceError(f"Database migration failed: {e}") from e

    finally:
        engine.dispose()
