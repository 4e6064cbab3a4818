"""SQLite backend for local runs, the operator CLI and the test suite.

The billing store relies on two things PostgreSQL gives for free and SQLite
has to be told about:

* foreign keys, so an order can never point at a missing cycle or
  subscription (``PRAGMA foreign_keys=ON`` on every connection);
* concurrent readers while the finalizer writes, since a webhook request
  and the finalizer's own transactions run side by side
  (``journal_mode=WAL`` plus a busy timeout).

``SELECT ... FOR UPDATE`` is a no-op here.  Exclusivity of invoice and
capacity transitions comes from the compare-and-set ``UPDATE`` statements
in :mod:`billing_engine.state.repository`, which SQLite serialises.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_PATH = Path(".bellybox") / "billing.db"
MEMORY = ":memory:"

_BUSY_TIMEOUT_SECONDS = 15
_PRAGMAS = ("journal_mode=WAL", "foreign_keys=ON", "synchronous=NORMAL")


def sqlite_path_from_url(database_url: str) -> str:
    """Return the file path of a ``sqlite[+aiosqlite]:///...`` URL (``:memory:`` when empty)."""
    _, _, path = database_url.partition(":///")
    return path or MEMORY


def local_database_url(db_path: Path | str) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def get_local_engine(db_path: Path | str = DEFAULT_LOCAL_PATH) -> AsyncEngine:
    """Open an aiosqlite engine on *db_path*, creating parent directories.

    Pass ``":memory:"`` for a throwaway database; note every pooled
    connection then sees its own empty database.
    """
    if str(db_path) == MEMORY:
        url = local_database_url(MEMORY)
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = local_database_url(path)

    engine = create_async_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(f"PRAGMA {pragma}")
        cursor.close()

    logger.info("Opened local billing store at %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> list[str]:
    """Create any missing billing tables and return every table name.

    Idempotent.  Production databases are migrated with Alembic instead.
    """
    from billing_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    tables = sorted(Base.metadata.tables)
    logger.info("Billing store has %d tables", len(tables))
    return tables
