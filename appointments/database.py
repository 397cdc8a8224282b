from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings


def create_db_engine(url: str) -> Engine:
    """
    Build an engine for the given URL.

    For SQLite:
    - check_same_thread=False, sessions are used from worker threads
      (FastAPI threadpool and asyncio.to_thread)
    - foreign keys enabled on every connection
    - every transaction starts with BEGIN IMMEDIATE, so the booking
      capacity check and insert are serialized between writers
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _sqlite_on_connect(dbapi_connection, _):
        # Let SQLAlchemy emit BEGIN itself (see _sqlite_on_begin)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


engine = create_db_engine(settings.resolved_database_url)

# Session factory shared by routers, cron endpoints and the orchestrator
SessionLocal = create_session_factory(engine)


# FastAPI dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal
