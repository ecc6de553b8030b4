import functools
import logging

import sqlalchemy
from sqlalchemy import event
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from app.core.config import settings  # ★configから設定を読み込む
from app.core.exceptions import IdempotencyConflict, TransientStorageError

logger = logging.getLogger(__name__)

# Cloud SQL Connector（INSTANCE_CONNECTION_NAME がある場合のみ初期化）
connector = None


def getconnection():
    """
    Cloud SQL への接続を確立する関数.
    config.py (settings) の値を使用します。
    """
    global connector
    if connector is None:
        from google.cloud.sql.connector import Connector

        connector = Connector()

    conn = connector.connect(
        settings.INSTANCE_CONNECTION_NAME,
        "pymysql",
        user=settings.DB_USER,
        password=settings.DB_PASSWORD,  # config.pyでは DB_PASS を DB_PASSWORD として読み込んでいます
        db=settings.DB_NAME,
        charset="utf8mb4",
        connect_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        # 行ロック待ちも有限時間で打ち切る
        init_command=f"SET innodb_lock_wait_timeout={settings.DB_LOCK_TIMEOUT_SECONDS}",
    )
    return conn


def _serialize_sqlite_writes(sqlite_engine) -> None:
    """
    SQLite は SELECT ... FOR UPDATE を無視するため、トランザクションを
    BEGIN IMMEDIATE で開始して書き込みを直列化する。
    pysqlite の自動 BEGIN を止めるので SAVEPOINT も正しく動く。
    """

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str = None):
    """設定に応じたエンジンを作成する（Cloud SQL / 任意のURL）"""
    if settings.INSTANCE_CONNECTION_NAME and url is None:
        return sqlalchemy.create_engine(
            "mysql+pymysql://",
            creator=getconnection,
            pool_pre_ping=True,
            pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        )

    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        # SQLiteはロック待ちを timeout で制限する
        sqlite_engine = sqlalchemy.create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.DB_LOCK_TIMEOUT_SECONDS,
            },
        )
        _serialize_sqlite_writes(sqlite_engine)
        return sqlite_engine
    return sqlalchemy.create_engine(
        url, pool_pre_ping=True, pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS
    )


# エンジンの作成
# ローカル実行時など、接続情報がない場合にクラッシュしないよう保護
try:
    engine = create_db_engine()
except Exception as e:
    print(f"Warning: Could not create database engine. {e}")
    engine = None

# セッション作成
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    DBセッションを取得するための依存関係.
    """
    if engine is None:
        raise TransientStorageError("Database engine is not initialized.")

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# --- トランザクション補助 ---

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


def storage_guard(func):
    """
    サービス関数（第1引数が Session）をラップする。
    一時的なDB障害は rollback した上で TransientStorageError に変換し、
    それ以外の例外も rollback してから再送出する（部分適用を残さない）。
    """

    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs):
        try:
            return func(db, *args, **kwargs)
        except TRANSIENT_ERRORS as e:
            db.rollback()
            logger.warning("Storage unavailable in %s: %s", func.__name__, e)
            raise TransientStorageError(f"storage unavailable: {func.__name__}") from e
        except Exception:
            db.rollback()
            raise

    return wrapper


def insert_unique(db: Session, instance):
    """
    条件付きINSERT: 追加してコミットする。一意制約に衝突した場合は
    自分の書き込みを破棄して IdempotencyConflict を送出する
    （呼び出し元で勝者レコードを再読込すること）。
    """
    db.add(instance)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise IdempotencyConflict(
            f"{type(instance).__name__} already exists"
        ) from e
    return instance
