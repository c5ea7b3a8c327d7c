import logging
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Owns the SQLAlchemy engine and session factory for the relational store.

    The handle is constructed explicitly and opened/closed by the application
    lifespan; services receive sessions produced by it instead of reaching for
    a module-level engine.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        ssl_mode: Optional[str] = None,
        echo: bool = False,
    ):
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.ssl_mode = ssl_mode
        self.echo = echo
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def _engine_kwargs(self) -> Dict[str, Any]:
        if self.url.startswith("sqlite"):
            # In-memory SQLite must share one connection across sessions
            return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}

        connect_args = {}
        if self.ssl_mode and self.ssl_mode != "disable":
            connect_args["sslmode"] = self.ssl_mode
        return {
            "connect_args": connect_args,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_pre_ping": True,
        }

    def open(self) -> "Database":
        if self.engine is not None:
            logger.debug("Database engine already open.")
            return self

        safe_url = self.url.split("@")[-1] if "@" in self.url else self.url
        logger.info(f"Connecting to database: {safe_url}")
        try:
            self.engine = create_engine(self.url, echo=self.echo, **self._engine_kwargs())
            self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
            logger.info("SQLAlchemy engine and session configured successfully.")
        except Exception as e:
            logger.error(f"Failed to create SQLAlchemy engine or configure session: {e}", exc_info=True)
            raise
        return self

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database engine disposed.")
        self.engine = None
        self.SessionLocal = None

    def create_all(self) -> None:
        """Creates every table registered on `Base` (no-op for existing tables)."""
        # Register the models on Base.metadata before creating tables
        import support_agent.models  # noqa: F401

        if self.engine is None:
            raise RuntimeError("Database is not open.")
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        if self.SessionLocal is None:
            raise RuntimeError("Database is not open.")
        return self.SessionLocal()

    def get_db(self) -> Iterator[Session]:
        """
        Yields a session per request and always closes it, even if errors occur.
        """
        db = self.session()
        try:
            yield db
        finally:
            db.close()

    def health_check(self) -> bool:
        if self.engine is None:
            return False
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
