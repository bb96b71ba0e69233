from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./leedsbot.db"

# SQLite connections are shared with the threadpool FastAPI runs sync dependencies on
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def init_db(bind=None) -> None:
	"""Create any missing tables. Records are append-only, so there is nothing to migrate."""
	from . import models  # noqa: F401  registers the tables on Base.metadata

	Base.metadata.create_all(bind=bind or engine)


def get_db():
	"""Request-scoped session; the caller commits its own writes."""
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()
