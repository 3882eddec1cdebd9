from __future__ import annotations

import logging
from typing import Optional

from src.backend.config import settings
from src.backend.infra.db import inmemory as inmemory_repos
from src.backend.infra.db.models import Base
from src.backend.infra.db.repositories import ChartStore
from src.backend.infra.db.session import build_engine, create_sqlalchemy_session_factory
from src.backend.infra.db.sql_charts import SqlChartStore

logger = logging.getLogger("charts")


def create_sql_chart_store(database_url: str) -> ChartStore:
    """Build a SqlChartStore for ``database_url``, creating tables if needed."""

    engine = build_engine(database_url)
    # Create tables if they do not exist. In a real deployment this should be
    # handled by migrations, but this is convenient for early setups.
    Base.metadata.create_all(engine)
    return SqlChartStore(create_sqlalchemy_session_factory(engine))


def init_sql_repositories(database_url: Optional[str] = None) -> None:  # pragma: no cover - side-effectful wiring
    """Optionally switch the in-memory chart store to the SQL-backed one.

    If USE_SQL_REPOS is not enabled or DATABASE_URL is not configured, this is
    a no-op and the in-memory store remains active.
    """

    if not settings.use_sql_repos:
        return

    db_url = database_url or settings.database_url
    if not db_url:
        logger.warning("USE_SQL_REPOS is true but DATABASE_URL is not set; keeping in-memory chart store")
        return

    # Services resolve the store through this module attribute at call time,
    # so swapping it here is enough to redirect every caller.
    inmemory_repos.chart_store = create_sql_chart_store(db_url)
