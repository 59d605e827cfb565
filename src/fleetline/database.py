"""Database setup and session management."""

from collections.abc import Generator

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, SQLModel, create_engine

from fleetline.config import settings

engine = create_engine(
    f"sqlite:///{settings.db_path}",
    echo=False,
    # timeout bounds how long a writer waits on the SQLite lock
    connect_args={"check_same_thread": False, "timeout": 15},
)


def init_db() -> None:
    """Create all tables."""
    # Import models to register them with SQLModel before create_all()
    import fleetline.accounts.models  # noqa: F401
    import fleetline.incidents.models  # noqa: F401
    import fleetline.inventory.models  # noqa: F401
    import fleetline.registry.models  # noqa: F401

    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI Depends()."""
    with Session(engine) as session:
        yield session


def insert_for(session: Session):  # type: ignore[no-untyped-def]
    """Dialect ``insert`` construct that supports ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert
