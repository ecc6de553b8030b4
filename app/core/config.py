# daily-layer-backend/app/core/config.py

import os
from dotenv import load_dotenv

# .envファイルを読み込む（ローカル開発用）
# 本番環境（Cloud Runなど）ではファイルがないため無視されます
load_dotenv()


class Settings:
    # API設定
    API_V1_STR: str = "/api/v1"

    # DB設定
    # ローカル / テストでは DATABASE_URL をそのまま使う
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./daily_layer.db")

    # Cloud SQL接続名（設定されている場合のみ Cloud SQL Connector 経由で接続）
    INSTANCE_CONNECTION_NAME: str = os.getenv("INSTANCE_CONNECTION_NAME", "")
    DB_USER: str = os.getenv("DB_USER", "postgres")

    # .envではDB_PASSとなっているため、ここで名前を合わせて読み込みます
    DB_PASSWORD: str = os.getenv("DB_PASS", "password")
    DB_NAME: str = os.getenv("DB_NAME", "daily_layer")

    # ストレージ操作のタイムアウト（秒）: 無限に待たない
    DB_POOL_TIMEOUT_SECONDS: int = int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "10"))
    DB_LOCK_TIMEOUT_SECONDS: int = int(os.getenv("DB_LOCK_TIMEOUT_SECONDS", "5"))

    # ダイナミックポイント関連
    DYNAMIC_DAILY_CAP: int = int(os.getenv("DYNAMIC_DAILY_CAP", "250"))
    DIMINISHING_FACTOR: float = float(os.getenv("DIMINISHING_FACTOR", "0.5"))
    TICKET_POINTS_THRESHOLD: int = int(os.getenv("TICKET_POINTS_THRESHOLD", "25"))

    # Keys 変換関連
    POINTS_PER_KEY: int = int(os.getenv("POINTS_PER_KEY", "100"))
    KEYS_DAILY_CAP: int = int(os.getenv("KEYS_DAILY_CAP", "5"))
    KEYS_WEEKLY_CAP: int = int(os.getenv("KEYS_WEEKLY_CAP", "20"))

    # スタティックポイント関連
    SIGNUP_BONUS_POINTS: int = int(os.getenv("SIGNUP_BONUS_POINTS", "100"))

    # 抽選関連
    # シードは日付とこの秘密値から導出する（締め前に予測させない）
    DRAW_SEED_SECRET: str = os.getenv("DRAW_SEED_SECRET", "dev-draw-secret")
    DRAW_CLOSING_LEASE_SECONDS: int = int(os.getenv("DRAW_CLOSING_LEASE_SECONDS", "300"))

    # 日次ロールオーバー関連
    SCHEDULER_ENABLED: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    ROLLOVER_TICK_MINUTES: int = int(os.getenv("ROLLOVER_TICK_MINUTES", "15"))
    ROLLOVER_JOB_LEASE_SECONDS: int = int(os.getenv("ROLLOVER_JOB_LEASE_SECONDS", "600"))
    ROLLOVER_MAX_CATCHUP_DAYS: int = int(os.getenv("ROLLOVER_MAX_CATCHUP_DAYS", "7"))
    PREOPEN_MINUTES: int = int(os.getenv("PREOPEN_MINUTES", "5"))

    # 管理者用トリガー（空なら無効）
    ADMIN_TOKEN: str = os.getenv("ADMIN_TOKEN", "")

    # ログ
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # CORS設定
    CORS_ORIGINS: list = [
        "https://daily-layer-frontend.vercel.app",
        "http://localhost:3000",
    ]

    # DEBUG mode
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"


# 設定インスタンスを作成してエクスポート
settings = Settings()
