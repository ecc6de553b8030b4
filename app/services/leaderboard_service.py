# daily-layer-backend/app/services/leaderboard_service.py
"""
リーダーボードのスナップショット

締めた日のダイナミックポイント（その日の獲得分のみ）で順位を確定して凍結する。
同点はその日最初にポイントを獲得した時刻が早い方、さらに user_id の小さい方が上位。
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.exceptions import IdempotencyConflict
from app.db import models
from app.db.database import insert_unique, storage_guard
from app.utils.time_utils import get_utc_now, previous_day_id, to_utc

logger = logging.getLogger(__name__)


def get_snapshot(db: Session, day_id: str) -> Optional[models.LeaderboardSnapshot]:
    return db.query(models.LeaderboardSnapshot).filter(
        models.LeaderboardSnapshot.day_id == day_id
    ).first()


def _rank_key(row: dict):
    # DBによっては tz なしで返るので UTC に揃えて比較する
    first_earned_at = to_utc(row["first_earned_at"])
    return (
        -row["dynamic_points"],
        first_earned_at is None,
        first_earned_at,
        row["user_id"],
    )


def build_ranks(db: Session, day_id: str) -> list:
    """その日のポイントとチケットから順位表を作る"""
    rows = {}
    for day in db.query(models.PointsDay).filter(models.PointsDay.day_id == day_id).all():
        rows[day.user_id] = {
            "user_id": day.user_id,
            "dynamic_points": day.dynamic_earned,
            "tickets": 0,
            "first_earned_at": day.first_earned_at,
        }
    for ticket in db.query(models.DrawTicket).filter(models.DrawTicket.day_id == day_id).all():
        row = rows.setdefault(ticket.user_id, {
            "user_id": ticket.user_id,
            "dynamic_points": 0,
            "tickets": 0,
            "first_earned_at": None,
        })
        row["tickets"] = ticket.count

    # ポイントもチケットもないユーザーは載せない
    ordered = sorted(
        (r for r in rows.values() if r["dynamic_points"] > 0 or r["tickets"] > 0),
        key=_rank_key,
    )
    total = len(ordered)

    ranks = []
    for index, row in enumerate(ordered):
        rank = index + 1
        ranks.append({
            "user_id": row["user_id"],
            "rank": rank,
            "dynamic_points": row["dynamic_points"],
            "tickets": row["tickets"],
            "percentile": round((total - rank) / total * 100, 2) if total else 0,
        })
    return ranks


@storage_guard
def snapshot(db: Session, day_id: str, now: datetime = None) -> models.LeaderboardSnapshot:
    """
    スナップショットを作成する
    既に存在する場合はそのまま返す（再計算しない）
    """
    existing = get_snapshot(db, day_id)
    if existing:
        logger.info("Snapshot already exists for %s", day_id)
        return existing

    ranks = build_ranks(db, day_id)
    created = models.LeaderboardSnapshot(
        day_id=day_id,
        total_users=len(ranks),
        ranks=ranks,
        created_at=now or get_utc_now(),
    )
    try:
        insert_unique(db, created)
    except IdempotencyConflict:
        return get_snapshot(db, day_id)

    logger.info("📊 Created leaderboard snapshot for %s with %s user(s)", day_id, len(ranks))
    return created


def find_rank(snapshot_row: Optional[models.LeaderboardSnapshot], user_id: int) -> Optional[dict]:
    if snapshot_row is None:
        return None
    for row in snapshot_row.ranks or []:
        if row.get("user_id") == user_id:
            return row
    return None


def get_user_rank(db: Session, user_id: int, day_id: str) -> dict:
    """
    指定日の順位（パーセンタイル、前日比つき）
    change は正の値ほど順位が上がったことを表す
    """
    current = find_rank(get_snapshot(db, day_id), user_id)
    if current is None:
        return {"day_id": day_id, "rank": None, "percentile": None, "change": 0}

    before = find_rank(get_snapshot(db, previous_day_id(day_id)), user_id)
    change = before["rank"] - current["rank"] if before else 0
    return {
        "day_id": day_id,
        "rank": current["rank"],
        "percentile": current["percentile"],
        "change": change,
    }
