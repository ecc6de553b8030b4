# daily-layer-backend/app/services/points_service.py
"""
ポイント台帳のビジネスロジック

- スタティックポイント（フォロワー数・登録ボーナス等）: 増加のみ、Keysへの変換不可
- ダイナミックポイント（アプリ内の日々の活動）: 日次上限つきで加算、Keysへ変換可能
- Keys: ダイナミックポイントの明示的な変換でのみ増える（取り消し不可、ログを残す）

同一ユーザーへの更新はすべて points_accounts の行ロック内で行う。
"""

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ConversionCapExceeded,
    IdempotencyConflict,
    InsufficientDynamicPoints,
    InvalidAmount,
)
from app.db import models
from app.db.database import insert_unique, storage_guard
from app.services import draw_service, headline_service
from app.utils.time_utils import get_day_id, get_utc_now, iter_day_ids, previous_day_id


class ActivityType(str, enum.Enum):
    """ダイナミックポイントの獲得元（変換可能）"""

    DAILY_VISIT = "daily_visit"
    HEADLINE_VIEW = "headline_view"
    HEADLINE_ENGAGE = "headline_engage"
    DROP_ENGAGEMENT = "drop_engagement"
    PROOF_VERIFIED = "proof_verified"
    QUEST_COMPLETE = "quest_complete"
    SOCIAL_ACTION = "social_action"
    STREAK_BONUS = "streak_bonus"


class StaticSource(str, enum.Enum):
    """スタティックポイントの獲得元（変換不可）"""

    IG_FOLLOWERS = "ig_followers"
    SIGNUP_BONUS = "signup_bonus"
    REFERRAL_BONUS = "referral_bonus"
    MANUAL_ADJUSTMENT = "manual_adjustment"


# 活動ごとの基本ポイント
ACTIVITY_POINTS = {
    ActivityType.DAILY_VISIT: 10,
    ActivityType.HEADLINE_VIEW: 5,
    ActivityType.HEADLINE_ENGAGE: 25,
    ActivityType.DROP_ENGAGEMENT: 25,
    ActivityType.PROOF_VERIFIED: 100,
    ActivityType.QUEST_COMPLETE: 50,
    ActivityType.SOCIAL_ACTION: 5,
    ActivityType.STREAK_BONUS: 10,
}

# フォロワー数のティア（少ないアカウントほど1人あたりの価値が高い）
FOLLOWER_TIERS = [
    (2000, 10),
    (10000, 4),
    (None, 1),
]

WEEKLY_WINDOW_DAYS = 7

logger = logging.getLogger(__name__)


@dataclass
class ActivityResult:
    day_id: str
    event_type: str
    raw_points: int
    awarded_points: int
    discarded_points: int
    tickets_granted: int
    dynamic_points_today: int
    dynamic_points_balance: int


@dataclass
class ConversionResult:
    day_id: str
    points: int
    keys: int
    dynamic_points_balance: int
    keys_balance: int
    keys_remaining_today: int


# =============================================================================
# 口座
# =============================================================================

def get_account(db: Session, user_id: int) -> Optional[models.PointsAccount]:
    return db.query(models.PointsAccount).filter(
        models.PointsAccount.user_id == user_id
    ).first()


def lock_account(db: Session, user_id: int) -> models.PointsAccount:
    """口座を行ロック付きで取得（なければ作成してからロック）"""
    account = db.query(models.PointsAccount).filter(
        models.PointsAccount.user_id == user_id
    ).with_for_update().first()
    if account is not None:
        return account

    try:
        insert_unique(db, models.PointsAccount(
            user_id=user_id,
            static_points=0,
            dynamic_points=0,
            lifetime_dynamic_earned=0,
            lifetime_dynamic_converted=0,
            keys_balance=0,
        ))
    except IdempotencyConflict:
        pass

    return db.query(models.PointsAccount).filter(
        models.PointsAccount.user_id == user_id
    ).populate_existing().with_for_update().first()


def get_points_day(db: Session, user_id: int, day_id: str) -> Optional[models.PointsDay]:
    return db.query(models.PointsDay).filter(
        models.PointsDay.user_id == user_id,
        models.PointsDay.day_id == day_id,
    ).first()


def _points_day_for_update(db: Session, user_id: int, day_id: str) -> models.PointsDay:
    """口座ロック内で使う: その日のカウンタを取得、なければ追加"""
    day = get_points_day(db, user_id, day_id)
    if day is None:
        day = models.PointsDay(
            user_id=user_id,
            day_id=day_id,
            dynamic_earned=0,
            activity_points=0,
            discarded_points=0,
            keys_converted=0,
        )
        db.add(day)
        db.flush()
    return day


# =============================================================================
# スタティックポイント
# =============================================================================

@storage_guard
def credit_static(
    db: Session, user_id: int, amount: int, source, reference: str = None
) -> models.PointsAccount:
    """スタティックポイントを加算する（追記のみ、負数は拒否）"""
    if amount is None or amount < 0:
        raise InvalidAmount("static credit must be non-negative")
    try:
        source = StaticSource(source)
    except ValueError:
        raise InvalidAmount(f"unknown static source: {source}")

    account = lock_account(db, user_id)
    account.static_points += amount
    db.add(models.StaticPointsEvent(
        user_id=user_id,
        source=source.value,
        amount=amount,
        reference=reference,
        created_at=get_utc_now(),
    ))
    db.commit()
    db.refresh(account)

    logger.info("Credited %s static points to user %s (%s)", amount, user_id, source.value)
    return account


def follower_points(follower_count: int) -> int:
    """フォロワー数からスタティックポイントを算出（ティアごとに逓減）"""
    remaining = max(int(follower_count), 0)
    previous_max = 0
    points = 0
    for tier_max, per_follower in FOLLOWER_TIERS:
        span = remaining if tier_max is None else min(remaining, tier_max - previous_max)
        points += span * per_follower
        remaining -= span
        if tier_max is not None:
            previous_max = tier_max
        if remaining <= 0:
            break
    return points


@storage_guard
def attest_followers(db: Session, user_id: int, follower_count: int) -> models.PointsAccount:
    """
    フォロワー数の認証結果を反映する
    既に付与済みのフォロワーポイントを超えた分だけを加算する（減算はしない）
    """
    if follower_count is None or follower_count < 0:
        raise InvalidAmount("follower count must be non-negative")

    already = db.query(func.coalesce(func.sum(models.StaticPointsEvent.amount), 0)).filter(
        models.StaticPointsEvent.user_id == user_id,
        models.StaticPointsEvent.source == StaticSource.IG_FOLLOWERS.value,
    ).scalar() or 0

    delta = follower_points(follower_count) - int(already)
    if delta <= 0:
        account = lock_account(db, user_id)
        db.commit()
        return account

    return credit_static(
        db, user_id, delta, StaticSource.IG_FOLLOWERS,
        reference=f"followers:{int(follower_count)}",
    )


# =============================================================================
# ダイナミックポイント
# =============================================================================

def _count_today(db: Session, user_id: int, day_id: str, event_type: ActivityType) -> int:
    return db.query(func.count(models.ActivityEvent.id)).filter(
        models.ActivityEvent.user_id == user_id,
        models.ActivityEvent.day_id == day_id,
        models.ActivityEvent.event_type == event_type.value,
    ).scalar() or 0


def activity_award(event_type: ActivityType, repeat_index: int, multiplier: float = 1.0) -> int:
    """同じ活動の repeat_index 回目（0始まり）の獲得ポイント"""
    base = ACTIVITY_POINTS[event_type]
    return int(math.floor(base * multiplier * (settings.DIMINISHING_FACTOR ** repeat_index)))


def apply_activity(
    db: Session,
    user_id: int,
    event_type,
    now: datetime,
    reference_id: str = None,
) -> ActivityResult:
    """
    活動をセッションに反映する（コミットしない: 呼び出し元のトランザクション内で使う）

    - 日次上限を超えた分は破棄（持ち越さない）。活動自体は台帳に残る
    - 上限前の活動ポイントが TICKET_POINTS_THRESHOLD の倍数をまたぐたびにチケット1枚
    """
    event_type = ActivityType(event_type)
    day_id = get_day_id(now)

    account = lock_account(db, user_id)
    day = _points_day_for_update(db, user_id, day_id)

    multiplier = headline_service.activity_multiplier(headline_service.get_headline(db, day_id))
    repeat_index = _count_today(db, user_id, day_id, event_type)
    raw_points = activity_award(event_type, repeat_index, multiplier)

    cap_remaining = max(settings.DYNAMIC_DAILY_CAP - day.dynamic_earned, 0)
    awarded = min(raw_points, cap_remaining)
    discarded = raw_points - awarded

    threshold = settings.TICKET_POINTS_THRESHOLD
    tickets = 0
    if threshold > 0:
        tickets = (day.activity_points + raw_points) // threshold - day.activity_points // threshold

    day.activity_points += raw_points
    day.dynamic_earned += awarded
    day.discarded_points += discarded
    if awarded > 0:
        if day.first_earned_at is None:
            day.first_earned_at = now
        day.last_earned_at = now

    account.dynamic_points += awarded
    account.lifetime_dynamic_earned += awarded

    db.add(models.ActivityEvent(
        user_id=user_id,
        day_id=day_id,
        event_type=event_type.value,
        reference_id=reference_id,
        base_points=ACTIVITY_POINTS[event_type],
        raw_points=raw_points,
        awarded_points=awarded,
        tickets_granted=tickets,
        created_at=now,
    ))

    if tickets > 0:
        draw_service.add_tickets(db, user_id, day_id, count=tickets, now=now)

    db.flush()
    return ActivityResult(
        day_id=day_id,
        event_type=event_type.value,
        raw_points=raw_points,
        awarded_points=awarded,
        discarded_points=discarded,
        tickets_granted=tickets,
        dynamic_points_today=day.dynamic_earned,
        dynamic_points_balance=account.dynamic_points,
    )


@storage_guard
def record_activity(
    db: Session,
    user_id: int,
    event_type,
    now: datetime = None,
    reference_id: str = None,
) -> ActivityResult:
    """活動を記録してダイナミックポイントを加算する"""
    result = apply_activity(db, user_id, event_type, now or get_utc_now(), reference_id=reference_id)
    db.commit()

    if result.discarded_points > 0:
        logger.info(
            "User %s hit daily cap on %s: %s point(s) discarded",
            user_id, result.day_id, result.discarded_points,
        )
    return result


# =============================================================================
# Keys 変換
# =============================================================================

def _keys_converted_in_window(db: Session, user_id: int, day_id: str) -> int:
    """直近7日（今日を含む）に変換したKeys"""
    start = day_id
    for _ in range(WEEKLY_WINDOW_DAYS - 1):
        start = previous_day_id(start)
    window = iter_day_ids(start, day_id) + [day_id]
    return db.query(func.coalesce(func.sum(models.KeyConversion.keys), 0)).filter(
        models.KeyConversion.user_id == user_id,
        models.KeyConversion.day_id.in_(window),
    ).scalar() or 0


def keys_remaining(db: Session, user_id: int, day_id: str) -> int:
    """今日あと何Keys変換できるか（日次・週次の小さい方）"""
    day = get_points_day(db, user_id, day_id)
    converted_today = day.keys_converted if day else 0
    daily_left = settings.KEYS_DAILY_CAP - converted_today
    weekly_left = settings.KEYS_WEEKLY_CAP - int(_keys_converted_in_window(db, user_id, day_id))
    return max(min(daily_left, weekly_left), 0)


@storage_guard
def convert(db: Session, user_id: int, points: int, now: datetime = None) -> ConversionResult:
    """
    ダイナミックポイントを固定レートでKeysに変換する
    スタティックポイントは入力にならない。失敗時は状態を一切変更しない。
    """
    rate = settings.POINTS_PER_KEY
    if points is None or points <= 0 or points % rate != 0:
        raise InvalidAmount(f"amount must be a positive multiple of {rate}")

    now = now or get_utc_now()
    day_id = get_day_id(now)
    keys = points // rate

    account = lock_account(db, user_id)
    if account.dynamic_points < points:
        raise InsufficientDynamicPoints(
            f"requested {points}, available {account.dynamic_points}"
        )

    remaining = keys_remaining(db, user_id, day_id)
    if keys > remaining:
        raise ConversionCapExceeded(f"requested {keys} key(s), {remaining} remaining today")

    day = _points_day_for_update(db, user_id, day_id)
    account.dynamic_points -= points
    account.lifetime_dynamic_converted += points
    account.keys_balance += keys
    day.keys_converted += keys
    db.add(models.KeyConversion(
        user_id=user_id, day_id=day_id, points=points, keys=keys, created_at=now
    ))
    db.commit()

    logger.info("Converted %s dynamic points to %s key(s) for user %s", points, keys, user_id)
    return ConversionResult(
        day_id=day_id,
        points=points,
        keys=keys,
        dynamic_points_balance=account.dynamic_points,
        keys_balance=account.keys_balance,
        keys_remaining_today=remaining - keys,
    )


# =============================================================================
# 参照
# =============================================================================

def get_points_status(db: Session, user_id: int, now: datetime = None) -> dict:
    """ポイント状況（UI表示用）"""
    day_id = get_day_id(now or get_utc_now())
    account = get_account(db, user_id)
    day = get_points_day(db, user_id, day_id)
    return {
        "day_id": day_id,
        "static_points": account.static_points if account else 0,
        "dynamic_points_today": day.dynamic_earned if day else 0,
        "dynamic_points_balance": account.dynamic_points if account else 0,
        "dynamic_cap": settings.DYNAMIC_DAILY_CAP,
        "keys_balance": account.keys_balance if account else 0,
        "points_per_key": settings.POINTS_PER_KEY,
        "conversion_cap_remaining": keys_remaining(db, user_id, day_id),
    }


def get_points_history(db: Session, user_id: int, limit: int = 50) -> List[models.ActivityEvent]:
    return db.query(models.ActivityEvent).filter(
        models.ActivityEvent.user_id == user_id
    ).order_by(models.ActivityEvent.created_at.desc(), models.ActivityEvent.id.desc()).limit(limit).all()
