from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from linkpay.config import database_url

DATABASE_URL = database_url()


def build_engine(url: str):
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {}
    )


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
