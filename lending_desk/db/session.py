from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from lending_desk.config import LENDING_DB_URL


def _ensure_sqlite_dir(db_url: str) -> None:
    prefix = db_url.split(":///", 1)
    if len(prefix) != 2 or not prefix[0].startswith("sqlite"):
        return
    location = prefix[1]
    if not location or location == ":memory:":
        return
    Path(location).resolve().parent.mkdir(parents=True, exist_ok=True)


def build_engine(db_url: str) -> Engine:
    connect_args = {}
    if db_url.startswith("sqlite"):
        _ensure_sqlite_dir(db_url)
        connect_args = {"check_same_thread": False, "timeout": 15}
    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


engine_lending = build_engine(LENDING_DB_URL)

SessionLocalLending = build_sessionmaker(engine_lending)
