# daily-layer-backend/app/api/v1/endpoints/today.py
"""
今日画面まわりのエンドポイント
ユーザーのデイリー状態は最初のアクセス時にオンデマンドで作成される
"""

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.db import models
from app.db.database import get_db
from app.schemas import today as today_schema
from app.services import (
    daily_state_service,
    draw_service,
    leaderboard_service,
    points_service,
    rollover_service,
)
from app.utils.time_utils import get_day_id, get_utc_now, previous_day_id

from .admin import check_day_id, require_admin
from .users import get_current_user

router = APIRouter()


@router.get("", response_model=today_schema.TodayView)
def read_today(
    db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)
):
    """今日のヘッドライン・抽選・ポイント状況をまとめて返す"""
    return daily_state_service.build_today_view(db, current_user.id)


@router.post("/engage", response_model=today_schema.EngageResponse)
def engage(
    request: today_schema.EngageRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """
    活動を記録する
    その日最初のエンゲージで engaged=true になり、活動ポイントとチケットが加算される
    """
    now = get_utc_now()
    _, result = daily_state_service.engage(
        db, current_user.id, request.event_type, now=now, reference_id=request.reference_id
    )

    view = daily_state_service.build_today_view(db, current_user.id, now=now)
    view["activity"] = {
        "event_type": result.event_type,
        "raw_points": result.raw_points,
        "awarded_points": result.awarded_points,
        "discarded_points": result.discarded_points,
        "tickets_granted": result.tickets_granted,
    }
    return view


@router.get("/draw", response_model=today_schema.DrawView)
def read_draw(
    day_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """
    抽選の状況（day_id 省略時は今日）
    当選者は実行済みの場合のみ返す
    """
    today_id = get_day_id()
    if day_id is None or day_id == today_id:
        state = daily_state_service.get_or_create(db, current_user.id)
        draw = state.draw
        day_id = state.day_id
    else:
        check_day_id(day_id)
        draw = draw_service.get_draw(db, day_id)

    if draw is None:
        raise HTTPException(status_code=404, detail=f"{day_id} の抽選はありません")

    executed = draw.status == draw_service.DRAW_EXECUTED
    return {
        "day_id": draw.day_id,
        "status": draw.status,
        "prize_pool": draw.prize_pool or [],
        "tickets": draw_service.get_ticket_count(db, current_user.id, draw.day_id),
        "total_entries": draw.total_entries or 0,
        "total_tickets": draw.total_tickets or 0,
        "winners": (draw.winners or []) if executed else [],
        "my_prize": draw_service.winners_for_user(draw, current_user.id),
        "executed_at": draw.executed_at,
    }


@router.get("/points", response_model=today_schema.PointsView)
def read_points(
    db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)
):
    return points_service.get_points_status(db, current_user.id)


@router.post("/points/convert", response_model=today_schema.ConvertResponse)
def convert_points(
    request: today_schema.ConvertRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """ダイナミックポイントをKeysに変換する（スタティックポイントは使えない）"""
    result = points_service.convert(db, current_user.id, request.amount)
    return asdict(result)


@router.get("/points/history", response_model=List[today_schema.PointsHistoryItem])
def read_points_history(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """ダイナミックポイントの獲得履歴（新しい順）"""
    return points_service.get_points_history(db, current_user.id, limit=limit)


@router.get("/leaderboard", response_model=today_schema.LeaderboardView)
def read_leaderboard(
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """前日の確定済みリーダーボード"""
    day_id = previous_day_id(get_day_id())
    snapshot = leaderboard_service.get_snapshot(db, day_id)
    if snapshot is None:
        return {"day_id": day_id, "total_users": 0, "ranks": [], "me": None}

    return {
        "day_id": day_id,
        "total_users": snapshot.total_users,
        "ranks": (snapshot.ranks or [])[:limit],
        "me": leaderboard_service.get_user_rank(db, current_user.id, day_id),
    }


@router.post(
    "/init",
    response_model=today_schema.RolloverReportOut,
    dependencies=[Depends(require_admin)],
)
def initialize_today(db: Session = Depends(get_db)):
    """今日のヘッドラインと抽選を手動で用意する（既にあれば何もしない）"""
    return asdict(rollover_service.open_today(db))
