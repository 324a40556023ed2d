"""
Database Connection Module
One engine per process, and transactional sessions for the store layer.
"""

import os
from contextlib import contextmanager
from typing import Generator, List

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from kpi_sync.config_manager import ConfigManager
from kpi_sync.database.models import Base
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)


def build_database_url(db_config: dict) -> str:
    """`database.url` when set, otherwise a PostgreSQL URL from host/port/name/user/password."""
    if db_config.get('url'):
        return db_config['url']

    return "postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}".format(
        user=db_config.get('user', 'kpi_sync'),
        password=db_config.get('password') or '',
        host=db_config.get('host', 'localhost'),
        port=db_config.get('port', 5432),
        name=db_config.get('name', 'kpi_dashboard'),
    )


class DatabaseConnection:
    """Process-wide engine and session factory, configured from the `database` section."""

    _instance = None
    _engine: Engine = None
    _session_factory = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._engine is None:
            self.bind(self._create_engine())

    def _create_engine(self) -> Engine:
        db_config = ConfigManager().get_database_config()
        url = build_database_url(db_config)

        options = {
            'pool_pre_ping': True,
            'echo': os.getenv('SQL_ECHO', 'false').lower() == 'true',
        }
        # SQLite uses a single-connection pool that rejects sizing options
        if not url.startswith('sqlite'):
            options['pool_size'] = db_config.get('pool_size', 5)
            options['max_overflow'] = db_config.get('max_overflow', 10)
            options['pool_timeout'] = db_config.get('pool_timeout', 30)

        logger.info(f"Connecting to database at {url.rsplit('@', 1)[-1]}")
        return create_engine(url, **options)

    def bind(self, engine: Engine) -> None:
        """Use `engine` for every later session."""
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Session that commits when the block exits normally and rolls back otherwise.

        Usage:
            with db.session_scope() as session:
                session.query(...)
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def check_connection(self) -> bool:
        """True when `SELECT 1` succeeds."""
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection health check failed: {e}")
            return False

    def create_tables(self, drop_first: bool = False) -> List[str]:
        """
        Create every dashboard and integration table that does not exist yet.

        Args:
            drop_first: Drop all tables before creating them

        Returns:
            Names of the tables now present
        """
        if drop_first:
            logger.warning("Dropping all tables")
            Base.metadata.drop_all(self._engine)
        Base.metadata.create_all(self._engine)
        return sorted(inspect(self._engine).get_table_names())


def get_db() -> DatabaseConnection:
    """Get the singleton database connection instance."""
    return DatabaseConnection()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Transactional session on the configured database.

    Usage:
        with get_session() as session:
            session.query(...)
    """
    with get_db().session_scope() as session:
        yield session
