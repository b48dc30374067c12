from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from prestrack.config import settings


def build_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_size=5, **kwargs)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


class Base(DeclarativeBase):
    pass
