from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool
from chatrelay.core.config import get_settings
from chatrelay.models import provider, account, credential, setting  # Ensure models are imported for table creation

sqlite_url = f"sqlite:///{get_settings().db_path}"

connect_args = {"check_same_thread": False}
engine = create_engine(sqlite_url, connect_args=connect_args)


def create_memory_engine():
    """Throwaway in-memory database shared across connections (tests, ephemeral runs)."""
    db_engine = create_engine(
        "sqlite://",
        connect_args=connect_args,
        poolclass=StaticPool,
    )
    create_db_and_tables(db_engine)
    return db_engine


def create_db_and_tables(db_engine=None):
    SQLModel.metadata.create_all(db_engine or engine)
