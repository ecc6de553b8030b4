# daily-layer-backend/app/services/rollover_service.py
"""
日次ロールオーバー（10:00 UTC）

- open: その日の抽選（pending）とヘッドラインを用意する
- close: 前日のリーダーボードを凍結してから抽選を実行する（この順番）

各ステップは rollover_jobs に day_id ごとの状態を持つ冪等ジョブとして実行する。
重複配信・遅延・中断後の再実行はいずれも安全で、停止期間をまたいだ場合は
次回の tick で取りこぼした日を日付順に close -> open する。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import DrawNotClosable, MissedRollover, TransientStorageError
from app.db import models
from app.db.database import storage_guard
from app.services import draw_service, headline_service, leaderboard_service
from app.utils.time_utils import (
    days_between,
    get_day_id,
    get_utc_now,
    iter_day_ids,
    next_day_id,
)

logger = logging.getLogger(__name__)


JOB_OPEN = "open"
JOB_CLOSE = "close"

JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"


@dataclass
class RolloverReport:
    day_id: str
    opened: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    missed_days: List[str] = field(default_factory=list)


# =============================================================================
# ステップ本体
# =============================================================================

def open_day(db: Session, day_id: str, now: datetime = None) -> None:
    """その日のヘッドラインと抽選を用意する（既にあれば何もしない）"""
    headline_service.ensure_headline(db, day_id, now=now)
    draw_service.ensure_draw(db, day_id, now=now)


def close_day(db: Session, day_id: str, now: datetime = None) -> List[dict]:
    """スナップショットで重みを凍結してから抽選を実行する"""
    now = now or get_utc_now()
    if day_id >= get_day_id(now):
        # まだ終わっていない日を凍結しない
        raise DrawNotClosable(f"day {day_id} is not closed yet")
    leaderboard_service.snapshot(db, day_id, now=now)
    return draw_service.execute_draw(db, day_id, now=now)


# =============================================================================
# ジョブ管理
# =============================================================================

def get_job(db: Session, day_id: str, kind: str) -> Optional[models.RolloverJob]:
    return db.query(models.RolloverJob).filter(
        models.RolloverJob.day_id == day_id,
        models.RolloverJob.kind == kind,
    ).first()


def _claim_job(db: Session, day_id: str, kind: str, now: datetime) -> bool:
    """ジョブの実行権を取得する（完了済み・他で実行中なら False）"""
    job = get_job(db, day_id, kind)
    if job is None:
        db.add(models.RolloverJob(
            day_id=day_id, kind=kind, status=JOB_RUNNING, attempts=1, started_at=now
        ))
        try:
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            job = get_job(db, day_id, kind)

    if job.status == JOB_DONE:
        return False

    lease_cutoff = now - timedelta(seconds=settings.ROLLOVER_JOB_LEASE_SECONDS)
    if job.status == JOB_RUNNING and job.started_at is not None and _as_comparable(job.started_at, now) > lease_cutoff:
        return False

    claimed = db.execute(
        update(models.RolloverJob)
        .where(
            models.RolloverJob.id == job.id,
            models.RolloverJob.status == job.status,
            models.RolloverJob.attempts == job.attempts,
        )
        .values(status=JOB_RUNNING, attempts=job.attempts + 1, started_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    ).rowcount
    if claimed == 1:
        db.commit()
        return True
    db.rollback()
    return False


def _as_comparable(value: datetime, reference: datetime) -> datetime:
    """DBによっては tz なしで返るので reference に合わせる"""
    if value.tzinfo is None and reference.tzinfo is not None:
        return value.replace(tzinfo=reference.tzinfo)
    return value


def _finish_job(db: Session, day_id: str, kind: str, status: str, now: datetime, error: str = None) -> None:
    db.execute(
        update(models.RolloverJob)
        .where(models.RolloverJob.day_id == day_id, models.RolloverJob.kind == kind)
        .values(status=status, finished_at=now, last_error=error[:500] if error else None)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def run_job(db: Session, day_id: str, kind: str, now: datetime = None) -> Optional[bool]:
    """
    ジョブを1回実行する
    戻り値: True=実行した / False=スキップ（完了済み・実行中） / None=失敗
    """
    now = now or get_utc_now()
    if not _claim_job(db, day_id, kind, now):
        logger.info("Rollover %s for %s already handled, skipping", kind, day_id)
        return False

    step: Callable = open_day if kind == JOB_OPEN else close_day
    try:
        step(db, day_id, now=now)
    except TransientStorageError:
        # ジョブ状態は running のまま。リース切れ後に次の tick で再取得される
        raise
    except Exception as e:
        db.rollback()
        logger.exception("💥 Rollover %s for %s failed", kind, day_id)
        _finish_job(db, day_id, kind, JOB_FAILED, now, error=str(e))
        return None

    _finish_job(db, day_id, kind, JOB_DONE, now)
    logger.info("✅ Rollover %s for %s done", kind, day_id)
    return True


# =============================================================================
# スケジューラのエントリーポイント
# =============================================================================

def _last_opened_before(db: Session, day_id: str) -> Optional[str]:
    """day_id より前で open が完了している最新の日（期間の制限なし）"""
    return db.query(func.max(models.RolloverJob.day_id)).filter(
        models.RolloverJob.kind == JOB_OPEN,
        models.RolloverJob.status == JOB_DONE,
        models.RolloverJob.day_id < day_id,
    ).scalar()


def _unclosed_days_before(db: Session, day_id: str) -> set:
    """
    close が完了していない過去の日
    open ジョブのある日に加えて、オンデマンドで抽選だけ作られた日も拾う
    """
    closed = select(models.RolloverJob.day_id).where(
        models.RolloverJob.kind == JOB_CLOSE,
        models.RolloverJob.status == JOB_DONE,
    )
    opened = db.query(models.RolloverJob.day_id).filter(
        models.RolloverJob.kind == JOB_OPEN,
        models.RolloverJob.status == JOB_DONE,
        models.RolloverJob.day_id < day_id,
        models.RolloverJob.day_id.not_in(closed),
    ).all()
    pending_draws = db.query(models.DailyDraw.day_id).filter(
        models.DailyDraw.status != draw_service.DRAW_EXECUTED,
        models.DailyDraw.day_id < day_id,
        models.DailyDraw.day_id.not_in(closed),
    ).all()
    return {row[0] for row in opened} | {row[0] for row in pending_draws}


def _record(report: RolloverReport, bucket: str, day_id: str, result: Optional[bool]) -> None:
    if result is True:
        getattr(report, bucket).append(day_id)
    elif result is False:
        report.skipped.append(f"{bucket}:{day_id}")
    else:
        report.failed.append(f"{bucket}:{day_id}")


@storage_guard
def tick(db: Session, now: datetime = None) -> RolloverReport:
    """
    スケジューラから定期的に呼ばれる
    未完了の close（取りこぼした日を含む）を日付順に処理し、最後に今日を open する
    """
    now = now or get_utc_now()
    current = get_day_id(now)
    report = RolloverReport(day_id=current)

    unclosed = _unclosed_days_before(db, current)
    last_open = _last_opened_before(db, current)

    missed = []
    if last_open is not None and days_between(last_open, current) > 1:
        missed = iter_day_ids(next_day_id(last_open), current)

    latest_open = db.query(func.max(models.RolloverJob.day_id)).filter(
        models.RolloverJob.kind == JOB_OPEN
    ).scalar()
    if latest_open is not None and latest_open > next_day_id(current):
        logger.warning("Clock skew: days after %s already opened", current)

    if missed:
        report.missed_days = missed
        logger.warning(
            "%s: %s day(s) skipped since %s, catching up",
            MissedRollover.code, len(missed), last_open,
        )

    # 一度も開かれなかった日は新しい方から ROLLOVER_MAX_CATCHUP_DAYS 日分だけ補う
    # （開かれていた日は古さに関係なくすべて締める）
    limit = max(settings.ROLLOVER_MAX_CATCHUP_DAYS, 0)
    backfill = missed[len(missed) - limit:] if limit else []
    for day_id in missed[:len(missed) - len(backfill)]:
        report.skipped.append(f"missed:{day_id}")
    if len(backfill) < len(missed):
        logger.warning(
            "%s: not backfilling %s day(s) before %s (limit %s)",
            MissedRollover.code, len(missed) - len(backfill),
            backfill[0] if backfill else current, limit,
        )

    for day_id in sorted(unclosed | set(backfill)):
        if day_id in backfill:
            _record(report, "opened", day_id, run_job(db, day_id, JOB_OPEN, now=now))
        _record(report, "closed", day_id, run_job(db, day_id, JOB_CLOSE, now=now))

    _record(report, "opened", current, run_job(db, current, JOB_OPEN, now=now))
    return report


@storage_guard
def preopen(db: Session, now: datetime = None) -> RolloverReport:
    """境界の直前に翌日分を用意しておく"""
    now = now or get_utc_now()
    upcoming = get_day_id(now + timedelta(minutes=settings.PREOPEN_MINUTES))
    report = RolloverReport(day_id=upcoming)
    _record(report, "opened", upcoming, run_job(db, upcoming, JOB_OPEN, now=now))
    return report


@storage_guard
def open_today(db: Session, now: datetime = None) -> RolloverReport:
    """手動初期化: 今日の open ジョブだけを実行する"""
    now = now or get_utc_now()
    current = get_day_id(now)
    report = RolloverReport(day_id=current)
    _record(report, "opened", current, run_job(db, current, JOB_OPEN, now=now))
    return report
