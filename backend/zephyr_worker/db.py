# backend/zephyr_worker/db.py
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from .config import Settings

_engine: Optional[Engine] = None


def make_engine(database_url: str) -> Engine:
    # hosted postgres hands out postgres:// urls, sqlalchemy only knows postgresql://
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    connect_args = {}
    if database_url.startswith("sqlite"):
        # file-based sqlite is shared between the api and the worker thread
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, echo=False, connect_args=connect_args)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(Settings.from_env().database_url)
    return _engine


def init_db(engine: Optional[Engine] = None):
    SQLModel.metadata.create_all(engine or get_engine())


def get_session():
    with Session(get_engine()) as session:
        yield session
