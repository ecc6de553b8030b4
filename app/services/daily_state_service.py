# daily-layer-backend/app/services/daily_state_service.py
"""
ユーザーのデイリー状態（オンデマンド作成）

- その日最初のアクセスで作成（事前計算しない）
- (user_id, day_id) ごとに1件のみ。同時作成は一意制約で片方の書き込みを捨て、
  勝者のレコードを読み直す
- ヘッドライン・抽選はその日の共有リソースとして先に確保しておく
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import IdempotencyConflict
from app.db import models
from app.db.database import insert_unique, storage_guard
from app.services import draw_service, headline_service, leaderboard_service, points_service
from app.utils.time_utils import get_day_id, get_utc_now, previous_day_id

logger = logging.getLogger(__name__)


def find_state(db: Session, user_id: int, day_id: str) -> Optional[models.DailyState]:
    return db.query(models.DailyState).filter(
        models.DailyState.user_id == user_id,
        models.DailyState.day_id == day_id,
    ).first()


@storage_guard
def get_or_create(db: Session, user_id: int, now: datetime = None) -> models.DailyState:
    """今日のデイリー状態を取得、なければ作成する"""
    now = now or get_utc_now()
    day_id = get_day_id(now)

    state = find_state(db, user_id, day_id)
    if state:
        return state

    # その日の共有リソース（既にあれば何もしない）
    headline = headline_service.ensure_headline(db, day_id, now=now)
    draw = draw_service.ensure_draw(db, day_id, now=now)

    state = models.DailyState(
        user_id=user_id,
        day_id=day_id,
        headline_id=headline.id,
        draw_id=draw.id,
        engaged=False,
        created_at=now,
    )
    try:
        insert_unique(db, state)
    except IdempotencyConflict:
        # 同時アクセスで先に作られた: 自分の書き込みは破棄済み、勝者を返す
        state = find_state(db, user_id, day_id)
        if state is None:
            raise
        logger.info("Concurrent first visit for user %s on %s resolved", user_id, day_id)
        return state

    logger.info("Created on-demand state for user %s on %s", user_id, day_id)
    return state


def _mark_engaged(db: Session, state: models.DailyState, now: datetime) -> None:
    """engaged=false -> true の遷移（コミットしない）。口座ロックを取ってから呼ぶこと"""
    # 同時リクエストでも遷移は1回だけ
    flipped = db.query(models.DailyState).filter(
        models.DailyState.id == state.id,
        models.DailyState.engaged == False,  # noqa: E712
    ).update({"engaged": True, "engaged_at": now}, synchronize_session=False)

    if flipped == 1:
        bonus = headline_service.engagement_bonus_tickets(state.headline)
        if bonus > 0:
            draw_service.add_tickets(db, state.user_id, state.day_id, count=bonus, now=now)


@storage_guard
def record_engagement(db: Session, user_id: int, now: datetime = None) -> models.DailyState:
    """
    engaged を true にする（同じ日の2回目以降は何もしない）
    chance ヘッドラインの日は最初のエンゲージでボーナスチケットを付与する
    """
    now = now or get_utc_now()
    state = get_or_create(db, user_id, now=now)
    if state.engaged:
        return state

    points_service.lock_account(db, user_id)
    _mark_engaged(db, state, now)
    db.commit()
    db.refresh(state)
    return state


@storage_guard
def engage(
    db: Session,
    user_id: int,
    event_type,
    now: datetime = None,
    reference_id: str = None,
) -> Tuple[models.DailyState, points_service.ActivityResult]:
    """
    エンゲージと活動の記録を1トランザクションで行う
    どちらかが失敗したら両方とも反映しない
    """
    now = now or get_utc_now()
    state = get_or_create(db, user_id, now=now)

    result = points_service.apply_activity(db, user_id, event_type, now, reference_id=reference_id)
    _mark_engaged(db, state, now)
    db.commit()
    db.refresh(state)

    logger.info("User %s engaged on %s (%s)", user_id, state.day_id, result.event_type)
    return state, result


def build_today_view(db: Session, user_id: int, now: datetime = None) -> dict:
    """今日画面の表示用データを組み立てる"""
    now = now or get_utc_now()
    state = get_or_create(db, user_id, now=now)
    day_id = state.day_id

    points = points_service.get_points_status(db, user_id, now=now)
    headline = state.headline
    draw = state.draw

    return {
        "day_id": day_id,
        "headline_id": state.headline_id,
        "headline": {
            "type": headline.headline_type if headline else None,
            "payload": headline.payload if headline else None,
        },
        "draw_id": state.draw_id,
        "draw_status": draw.status if draw else draw_service.DRAW_PENDING,
        "tickets": draw_service.get_ticket_count(db, user_id, day_id),
        "dynamic_points_today": points["dynamic_points_today"],
        "dynamic_points_balance": points["dynamic_points_balance"],
        "static_points": points["static_points"],
        "keys_balance": points["keys_balance"],
        "engaged": state.engaged,
        "yesterday_rank": leaderboard_service.get_user_rank(db, user_id, previous_day_id(day_id)),
    }
