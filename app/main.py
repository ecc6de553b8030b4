# daily-layer-backend/app/main.py

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# 必要なモジュール
from app.db import models  # noqa: F401  テーブル定義の登録
from app.db.database import engine, Base
from app.api.v1.api import api_router
from app.core.config import settings
from app.core.exceptions import DailyLayerError, TransientStorageError
from app.core.scheduler import start_scheduler, shutdown_scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Daily Layer API", version="1.0.0")


@app.on_event("startup")
def startup_event():
    # 1. DBエンジンの確認
    if engine is None:
        print("⚠️ Database engine is None. Skipping operations.")
        # DB接続が失敗しても、FastAPI自体は起動させておく（ヘルスチェックをパスするため）
        return

    try:
        # 2. テーブル作成 (存在しない場合のみ作成されるため高速)
        Base.metadata.create_all(bind=engine)
        print("✅ Tables check passed.")
    except Exception as e:
        print(f"⚠️ Startup error: {e}")
        return

    # 3. 日次ロールオーバーのスケジューラ（起動直後に取りこぼし分も回収する）
    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    else:
        print("ℹ️ Scheduler disabled (SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
def shutdown_event():
    shutdown_scheduler()


# --- 例外ハンドラ ---
@app.exception_handler(DailyLayerError)
def daily_layer_error_handler(request: Request, exc: DailyLayerError):
    headers = None
    if isinstance(exc, TransientStorageError):
        # 一時的な障害: クライアントはリトライしてよい
        headers = {"Retry-After": "1"}
        logger.warning("Transient storage error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": str(exc)},
        headers=headers,
    )


# --- CORS設定 ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- ルーター ---
app.include_router(api_router, prefix=settings.API_V1_STR)


# --- 簡易エンドポイント ---
@app.get("/api/v1/ping")
def ping():
    return {"status": "success"}


@app.get("/")
def read_root():
    return {"message": "Daily Layer API"}
