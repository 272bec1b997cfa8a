from datetime import datetime, timezone

from sqlalchemy import MetaData, create_engine
from sqlalchemy.orm import DeclarativeBase, Session

from . import config


def utcnow() -> datetime:
    # Naive UTC: sqlite drops tzinfo on the way back, so store none at all.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    metadata = MetaData(schema=config.DB_SCHEMA)


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(config.DB_URL, future=True, pool_pre_ping=True, connect_args=_connect_args(config.DB_URL))


def get_session() -> Session:
    with Session(engine) as s:
        yield s
