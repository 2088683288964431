from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from mailflow.config import settings


class Base(DeclarativeBase):
    pass


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(bind=engine)


def init_db(bind=None):
    from mailflow.db import tables  # noqa: F401 - registers table models
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
