# daily-layer-backend/app/services/draw_service.py
"""
デイリー抽選のビジネスロジック

- チケット1枚以上で自動エントリー（最低活動量の条件なし）
- ステータスは pending -> closing -> executed の一方向
- 実行は日付から導出したシードで再現可能（監査用）、締め前には予測できない
- 実行済みの抽選を再実行しても既存の当選者を返すだけ
"""

import hashlib
import logging
import random
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import or_, and_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    DrawAlreadyExecuted,
    DrawClosed,
    DrawInProgress,
    DrawNotClosable,
    IdempotencyConflict,
    InvalidAmount,
)
from app.db import models
from app.db.database import insert_unique, storage_guard
from app.utils.time_utils import get_day_id, get_utc_now

logger = logging.getLogger(__name__)


DRAW_PENDING = "pending"
DRAW_CLOSING = "closing"
DRAW_EXECUTED = "executed"

# Phase 0 の賞品プール: 通貨（gems等）は含めない
PRIZE_POOL = [
    {"tier": "grand", "type": "keys", "amount": 10, "quantity": 1, "description": "10 PromoKeys"},
    {"tier": "major", "type": "boost", "amount": 1.5, "quantity": 5, "description": "1.5x Boost Tomorrow"},
    {"tier": "minor", "type": "keys", "amount": 2, "quantity": 20, "description": "2 PromoKeys"},
    {"tier": "minor", "type": "badge", "amount": 1, "quantity": 50, "description": "Lucky Winner Badge"},
]
ALLOWED_PRIZE_TYPES = {"keys", "boost", "access", "badge"}


def validate_prize_pool(prize_pool: Sequence[dict]) -> List[dict]:
    """賞品プールを検証する（許可されていない賞品タイプは拒否）"""
    validated = []
    for prize in prize_pool:
        if prize.get("type") not in ALLOWED_PRIZE_TYPES:
            raise InvalidAmount(f"prize type not allowed in draw: {prize.get('type')}")
        if int(prize.get("quantity", 0)) < 0:
            raise InvalidAmount("prize quantity must be non-negative")
        validated.append(dict(prize))
    return validated


def get_draw(db: Session, day_id: str) -> Optional[models.DailyDraw]:
    return db.query(models.DailyDraw).filter(models.DailyDraw.day_id == day_id).first()


@storage_guard
def ensure_draw(db: Session, day_id: str, now: datetime = None) -> models.DailyDraw:
    """その日の抽選を取得、なければ pending で作成（冪等）"""
    draw = get_draw(db, day_id)
    if draw:
        return draw

    draw = models.DailyDraw(
        day_id=day_id,
        status=DRAW_PENDING,
        prize_pool=validate_prize_pool(PRIZE_POOL),
        total_entries=0,
        total_tickets=0,
        created_at=now or get_utc_now(),
    )
    try:
        insert_unique(db, draw)
    except IdempotencyConflict:
        return get_draw(db, day_id)

    logger.info("Created draw for %s", day_id)
    return draw


# =============================================================================
# チケット
# =============================================================================

def get_ticket_count(db: Session, user_id: int, day_id: str) -> int:
    ticket = db.query(models.DrawTicket).filter(
        models.DrawTicket.user_id == user_id,
        models.DrawTicket.day_id == day_id,
    ).first()
    return ticket.count if ticket else 0


def _find_ticket(db: Session, user_id: int, day_id: str) -> Optional[models.DrawTicket]:
    return db.query(models.DrawTicket).filter(
        models.DrawTicket.user_id == user_id,
        models.DrawTicket.day_id == day_id,
    ).with_for_update().first()


def add_tickets(
    db: Session, user_id: int, day_id: str, count: int = 1, now: datetime = None
) -> models.DrawTicket:
    """チケットを加算する（コミットしない: 呼び出し元のトランザクション内で使う）"""
    if count <= 0:
        raise InvalidAmount("ticket count must be positive")

    draw = get_draw(db, day_id)
    if draw is not None and draw.status != DRAW_PENDING:
        raise DrawClosed(f"draw for {day_id} is {draw.status}")
    snapshot_exists = db.query(models.LeaderboardSnapshot.id).filter(
        models.LeaderboardSnapshot.day_id == day_id
    ).first()
    if snapshot_exists:
        raise DrawClosed(f"standings for {day_id} are frozen")

    now = now or get_utc_now()
    ticket = _find_ticket(db, user_id, day_id)

    if ticket is None:
        # 最初の1枚: 同時に作られた場合は SAVEPOINT だけ戻して相手の行に加算する
        try:
            with db.begin_nested():
                db.add(models.DrawTicket(
                    user_id=user_id, day_id=day_id, count=0, first_accrued_at=now
                ))
        except IntegrityError:
            logger.info("Concurrent ticket row for user %s on %s resolved", user_id, day_id)
        ticket = _find_ticket(db, user_id, day_id)

    ticket.count += count
    ticket.updated_at = now
    db.flush()
    return ticket


@storage_guard
def accrue_ticket(
    db: Session, user_id: int, day_id: str, count: int = 1, now: datetime = None
) -> models.DrawTicket:
    """チケットを加算してコミットする（上限なし、ポイントへの副作用なし）"""
    ticket = add_tickets(db, user_id, day_id, count=count, now=now)
    db.commit()
    logger.info("User %s accrued %s ticket(s) for %s (total %s)", user_id, count, day_id, ticket.count)
    return ticket


# =============================================================================
# 抽選の実行
# =============================================================================

def draw_seed(day_id: str) -> str:
    """日付と秘密値からシードを導出する（同じ日なら常に同じ値）"""
    material = f"{settings.DRAW_SEED_SECRET}:{day_id}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


def select_winners(
    entries: Sequence[Tuple[int, int]], prize_pool: Sequence[dict], seed: str
) -> List[dict]:
    """
    重み付き・非復元抽出で当選者を選ぶ

    entries: (user_id, チケット数) のリスト。チケット0のユーザーは対象外。
    候補は user_id 昇順に並べるので、同じシードなら結果は常に同じ。
    1人1賞まで。候補がいなくなった枠は当選者なし。
    """
    rng = random.Random(int(seed, 16))
    remaining = sorted((user_id, tickets) for user_id, tickets in entries if tickets > 0)

    winners = []
    for prize in prize_pool:
        for _ in range(int(prize.get("quantity", 0))):
            total = sum(tickets for _, tickets in remaining)
            if total <= 0:
                break

            pick = rng.randrange(total)
            index = 0
            for index, (_, tickets) in enumerate(remaining):
                if pick < tickets:
                    break
                pick -= tickets

            user_id, tickets = remaining.pop(index)
            winners.append({
                "user_id": user_id,
                "tickets": tickets,
                "prize_tier": prize.get("tier"),
                "prize_type": prize.get("type"),
                "prize_amount": prize.get("amount"),
                "description": prize.get("description"),
            })
    return winners


def _load_entries(db: Session, day_id: str) -> List[Tuple[int, int]]:
    """抽選の重み: スナップショットがあればそれを正とする"""
    snapshot = db.query(models.LeaderboardSnapshot).filter(
        models.LeaderboardSnapshot.day_id == day_id
    ).first()
    if snapshot is not None:
        return [(row["user_id"], int(row.get("tickets", 0))) for row in (snapshot.ranks or [])]

    tickets = db.query(models.DrawTicket).filter(models.DrawTicket.day_id == day_id).all()
    return [(t.user_id, t.count) for t in tickets]


def _claim_for_closing(db: Session, draw: models.DailyDraw, now: datetime) -> None:
    """
    pending -> closing のCAS。期限切れの closing（中断された実行）も引き継げる。
    取得できなければ DrawAlreadyExecuted / DrawInProgress を送出する。
    """
    lease_cutoff = now - timedelta(seconds=settings.DRAW_CLOSING_LEASE_SECONDS)
    result = db.execute(
        update(models.DailyDraw)
        .where(
            models.DailyDraw.id == draw.id,
            or_(
                models.DailyDraw.status == DRAW_PENDING,
                and_(
                    models.DailyDraw.status == DRAW_CLOSING,
                    models.DailyDraw.closing_started_at < lease_cutoff,
                ),
            ),
        )
        .values(status=DRAW_CLOSING, closing_started_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.commit()
        return

    db.rollback()
    db.refresh(draw)
    if draw.status == DRAW_EXECUTED:
        raise DrawAlreadyExecuted(draw.day_id, list(draw.winners or []))
    raise DrawInProgress(f"draw for {draw.day_id} is being executed")


@storage_guard
def execute_draw(db: Session, day_id: str, now: datetime = None) -> List[dict]:
    """
    抽選を実行して当選者リストを返す（1日1回のみ効果を持つ）

    - 締め前（当日以降）の抽選は実行できない
    - 実行済みなら再抽選せず既存の当選者を返す
    """
    now = now or get_utc_now()
    if day_id >= get_day_id(now):
        raise DrawNotClosable(f"day {day_id} is not closed yet")

    draw = ensure_draw(db, day_id, now=now)
    previous_status = draw.status

    try:
        _claim_for_closing(db, draw, now)
    except DrawAlreadyExecuted as e:
        logger.info("Draw for %s already executed, returning %s winner(s)", day_id, len(e.winners))
        return e.winners

    if previous_status == DRAW_CLOSING:
        # 中断された実行の再開（同じシードなので結果は同じ）
        logger.warning("Resuming interrupted draw for %s", day_id)

    entries = _load_entries(db, day_id)
    total_entries = sum(1 for _, tickets in entries if tickets > 0)
    total_tickets = sum(tickets for _, tickets in entries if tickets > 0)

    seed = draw_seed(day_id)
    winners = select_winners(entries, draw.prize_pool or [], seed)

    result = db.execute(
        update(models.DailyDraw)
        .where(models.DailyDraw.id == draw.id, models.DailyDraw.status == DRAW_CLOSING)
        .values(
            status=DRAW_EXECUTED,
            winners=winners,
            total_entries=total_entries,
            total_tickets=total_tickets,
            seed=seed,
            executed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # 他のワーカーが先に確定させた
        db.rollback()
        db.refresh(draw)
        logger.warning("Draw for %s was finalized concurrently", day_id)
        return list(draw.winners or [])

    db.commit()
    db.refresh(draw)
    logger.info(
        "🎲 Draw complete for %s: %s winner(s) from %s entries / %s tickets",
        day_id, len(winners), total_entries, total_tickets,
    )
    return winners


def winners_for_user(draw: Optional[models.DailyDraw], user_id: int) -> Optional[dict]:
    """当選していればその賞品を返す"""
    if draw is None or draw.status != DRAW_EXECUTED:
        return None
    for winner in draw.winners or []:
        if winner.get("user_id") == user_id:
            return winner
    return None

