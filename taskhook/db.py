from sqlmodel import create_engine, SQLModel, Session
import logging

from taskhook.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

if DATABASE_URL.startswith("sqlite"):
    # SQLite is shared between the request threads and the delivery worker
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,
        pool_timeout=30,
    )


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables():
    # Import models so their tables are registered on the metadata
    import taskhook.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables ensured")
