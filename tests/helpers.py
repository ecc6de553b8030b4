import os
from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import models
from app.db.database import Base, create_db_engine
from app.utils.time_utils import UTC


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


# 2026-10-14 は水曜（reward）、10-13 は火曜（multiplier）、10-17 は土曜（chance）
WEDNESDAY = utc(2026, 10, 14, 12, 0)
TUESDAY = utc(2026, 10, 13, 12, 0)
SATURDAY = utc(2026, 10, 17, 12, 0)


def create_session_factory():
    """テストごとのインメモリDB"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_user(db, name: str) -> models.User:
    user = models.User(firebase_uid=f"uid-{name}", username=name, email=f"{name}@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_file_session_factory(directory: str):
    """スレッド間で共有するファイルDB（アプリと同じエンジン設定）"""
    engine = create_db_engine(f"sqlite:///{os.path.join(directory, 'daily_layer_test.db')}")
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)
