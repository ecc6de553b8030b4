# daily-layer-backend/app/core/exceptions.py
"""
デイリーレイヤーの例外定義

経済ルール違反はローカルで拒否し（状態変更なし）、
ストレージ障害はリトライ可能なエラーとして呼び出し元へ伝播させる。
"""

from typing import Optional


class DailyLayerError(Exception):
    """全例外の基底クラス（APIでは status_code / code に変換される）"""

    status_code: int = 500
    code: str = "daily_layer_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


# --- ストレージ ---

class TransientStorageError(DailyLayerError):
    """ストレージが一時的に利用できない。部分的なコミットは行われていない"""

    status_code = 503
    code = "transient_storage_error"


class IdempotencyConflict(DailyLayerError):
    """条件付きINSERTが一意制約に衝突した（内部で勝者レコードを再読込して解決する）"""

    status_code = 409
    code = "idempotency_conflict"


# --- 抽選 ---

class DrawAlreadyExecuted(DailyLayerError):
    """抽選は実行済み。呼び出し元には既存の当選者リストを返す"""

    status_code = 200
    code = "draw_already_executed"

    def __init__(self, day_id: str, winners: list):
        super().__init__(f"draw for {day_id} already executed")
        self.day_id = day_id
        self.winners = winners


class DrawInProgress(DailyLayerError):
    status_code = 409
    code = "draw_in_progress"


class DrawNotClosable(DailyLayerError):
    status_code = 409
    code = "draw_not_closable"


class DrawClosed(DailyLayerError):
    status_code = 409
    code = "draw_closed"


# --- ポイント ---

class InsufficientDynamicPoints(DailyLayerError):
    status_code = 400
    code = "insufficient_dynamic_points"


class ConversionCapExceeded(DailyLayerError):
    status_code = 400
    code = "conversion_cap_exceeded"


class InvalidAmount(DailyLayerError):
    status_code = 400
    code = "invalid_amount"


# --- 運用 ---

class MissedRollover(DailyLayerError):
    """ロールオーバーの取りこぼし（スケジューラの次回tickで自己修復。ログのみ）"""

    code = "missed_rollover"

