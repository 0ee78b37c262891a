import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Setup logging
logger = logging.getLogger(__name__)

Base = declarative_base()


def create_db_engine(database_uri: str) -> Engine:
    """Create the SQLAlchemy engine with connection parameters suited to the backend."""
    if database_uri.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        # In-memory databases only exist on a single connection
        if ":memory:" in database_uri or database_uri in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_uri, **kwargs)

    connect_args = {}
    if "postgresql" in database_uri:
        connect_args = {
            "connect_timeout": 10,
            "application_name": "faas_manager"
        }
    engine = create_engine(
        database_uri,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args=connect_args
    )

    # Test the connection
    try:
        with engine.connect():
            logger.info("Successfully connected to the database")
    except Exception as e:
        logger.error(f"Failed to connect to the database: {str(e)}")
        raise
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    # Records outlive their session; the manager hands them across calls
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine):
    # Import models so they register with Base.metadata
    from ..models import function  # noqa: F401

    Base.metadata.create_all(bind=engine)
