# daily-layer-backend/app/services/headline_service.py
"""
デイリーヘッドラインのビジネスロジック
- 1日1件、曜日ローテーションでタイプを決定
- multiplier: その日の活動ポイントが倍になる
- chance: その日最初のエンゲージでボーナスチケット
"""

import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session

from app.core.exceptions import IdempotencyConflict
from app.db import models
from app.db.database import insert_unique, storage_guard
from app.utils.time_utils import day_weekday, get_utc_now

logger = logging.getLogger(__name__)


# ヘッドライン定義
HEADLINE_PAYLOADS = {
    "reward": {
        "title": "Today's Featured Opportunity",
        "subtitle": "Explore today's featured drop",
        "cta_text": "Explore",
        "cta_action": "/today/opportunity",
    },
    "multiplier": {
        "title": "2× Points Day!",
        "subtitle": "All dynamic points doubled today. Get ahead of the pack!",
        "multiplier": 2.0,
        "cta_text": "Start Earning",
        "cta_action": "/today/opportunity",
    },
    "chance": {
        "title": "Lucky Weekend!",
        "subtitle": "Earn bonus draw tickets today. Higher chance of winning!",
        "extra_tickets": 1,
        "cta_text": "Get Tickets",
        "cta_action": "/today/opportunity",
    },
}


def select_headline_type(day_id: str) -> str:
    """曜日でタイプを決める（月水金: reward, 火木: multiplier, 土日: chance）"""
    weekday = day_weekday(day_id)
    if weekday in (0, 2, 4):
        return "reward"
    if weekday in (1, 3):
        return "multiplier"
    return "chance"


def get_headline(db: Session, day_id: str) -> Optional[models.DailyHeadline]:
    return db.query(models.DailyHeadline).filter(
        models.DailyHeadline.day_id == day_id
    ).first()


@storage_guard
def ensure_headline(db: Session, day_id: str, now: datetime = None) -> models.DailyHeadline:
    """その日のヘッドラインを取得、なければ作成（冪等）"""
    headline = get_headline(db, day_id)
    if headline:
        return headline

    headline_type = select_headline_type(day_id)
    headline = models.DailyHeadline(
        day_id=day_id,
        headline_type=headline_type,
        payload=dict(HEADLINE_PAYLOADS[headline_type]),
        created_at=now or get_utc_now(),
    )
    try:
        insert_unique(db, headline)
    except IdempotencyConflict:
        # 同時に作成された場合は勝者を使う
        return get_headline(db, day_id)

    logger.info("Created headline %s for %s", headline_type, day_id)
    return headline


def activity_multiplier(headline: Optional[models.DailyHeadline]) -> float:
    """活動ポイントの倍率"""
    if headline is None or headline.headline_type != "multiplier":
        return 1.0
    return float((headline.payload or {}).get("multiplier", 1.0))


def engagement_bonus_tickets(headline: Optional[models.DailyHeadline]) -> int:
    """その日最初のエンゲージで付与するボーナスチケット数"""
    if headline is None or headline.headline_type != "chance":
        return 0
    return int((headline.payload or {}).get("extra_tickets", 0))
