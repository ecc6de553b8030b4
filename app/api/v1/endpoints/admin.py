# daily-layer-backend/app/api/v1/endpoints/admin.py
"""
運用者向けの手動トリガー（スケジューラと同じ冪等な処理を呼ぶだけ）
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Header, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.database import get_db
from app.schemas import today as today_schema
from app.services import draw_service, rollover_service
from app.utils.time_utils import parse_day_id

router = APIRouter()


def check_day_id(day_id: str) -> str:
    """day_id の形式（YYYY-MM-DD）を検証する"""
    try:
        parse_day_id(day_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"day_id の形式が不正です: {day_id}",
        )
    return day_id


def require_admin(x_admin_token: str | None = Header(default=None)):
    """X-Admin-Token ヘッダーを検証する（ADMIN_TOKEN 未設定なら常に拒否）"""
    if not settings.ADMIN_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="管理者用トリガーは無効です",
        )
    if x_admin_token != settings.ADMIN_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="管理者トークンが不正です",
        )


@router.post(
    "/rollover/tick",
    response_model=today_schema.RolloverReportOut,
    dependencies=[Depends(require_admin)],
)
def trigger_rollover_tick(db: Session = Depends(get_db)):
    """close（取りこぼし分を含む）-> open を今すぐ実行する"""
    report = rollover_service.tick(db)
    return asdict(report)


@router.post(
    "/draws/{day_id}/execute",
    response_model=today_schema.DrawExecuteResponse,
    dependencies=[Depends(require_admin)],
)
def trigger_draw(day_id: str, db: Session = Depends(get_db)):
    """
    指定日の抽選を実行する（スナップショット -> 抽選）
    実行済みなら既存の当選者をそのまま返す
    """
    check_day_id(day_id)
    winners = rollover_service.close_day(db, day_id)
    draw = draw_service.get_draw(db, day_id)
    return {"day_id": day_id, "status": draw.status, "winners": winners}
