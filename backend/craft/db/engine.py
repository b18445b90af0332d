import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy import Engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker

from craft.configs import CRAFT_DATABASE_URL
from craft.configs import POSTGRES_DB
from craft.configs import POSTGRES_HOST
from craft.configs import POSTGRES_PASSWORD
from craft.configs import POSTGRES_PORT
from craft.configs import POSTGRES_USER
from craft.utils.logger import setup_logger

logger = setup_logger()

SYNC_DB_API = "psycopg2"

POSTGRES_DEFAULT_POOL_SIZE = 20
POSTGRES_DEFAULT_MAX_OVERFLOW = 10


def build_connection_string(
    *,
    db_api: str = SYNC_DB_API,
    user: str = POSTGRES_USER,
    password: str = POSTGRES_PASSWORD,
    host: str = POSTGRES_HOST,
    port: str = POSTGRES_PORT,
    db: str = POSTGRES_DB,
) -> str:
    if CRAFT_DATABASE_URL:
        return CRAFT_DATABASE_URL
    return f"postgresql+{db_api}://{user}:{password}@{host}:{port}/{db}"


class SqlEngine:
    _engine: Engine | None = None
    _sessionmaker: sessionmaker[Session] | None = None
    _lock: threading.Lock = threading.Lock()

    @classmethod
    def init_engine(
        cls,
        pool_size: int = POSTGRES_DEFAULT_POOL_SIZE,
        max_overflow: int = POSTGRES_DEFAULT_MAX_OVERFLOW,
        **extra_engine_kwargs: Any,
    ) -> None:
        with cls._lock:
            if cls._engine:
                return

            connection_string = build_connection_string()
            engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
            # sqlite (dev/test) doesn't take pool sizing arguments
            if not connection_string.startswith("sqlite"):
                engine_kwargs["pool_size"] = pool_size
                engine_kwargs["max_overflow"] = max_overflow
            engine_kwargs.update(extra_engine_kwargs)

            cls._engine = create_engine(connection_string, **engine_kwargs)
            cls._sessionmaker = sessionmaker(bind=cls._engine, expire_on_commit=False)
            logger.info(f"Initialized database engine ({cls._engine.dialect.name})")

    @classmethod
    def get_engine(cls) -> Engine:
        if not cls._engine:
            cls.init_engine()
        if not cls._engine:
            raise RuntimeError("Engine not initialized. Must call init_engine first.")
        return cls._engine

    @classmethod
    def get_sessionmaker(cls) -> sessionmaker[Session]:
        if not cls._sessionmaker:
            cls.get_engine()
        if not cls._sessionmaker:
            raise RuntimeError("Sessionmaker not initialized.")
        return cls._sessionmaker

    @classmethod
    def reset_engine(cls) -> None:
        with cls._lock:
            if cls._engine:
                cls._engine.dispose()
            cls._engine = None
            cls._sessionmaker = None


@contextmanager
def get_session_with_default() -> Generator[Session, None, None]:
    """Session for use outside of a request (background work, streaming).

    Commits nothing on its own. Rolls back if the block raises.
    """
    session = SqlEngine.get_sessionmaker()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
