# daily-layer-backend/app/core/scheduler.py
"""
日次ロールオーバーのスケジューラ（APScheduler）

- 境界の少し前: 翌日分を先に open しておく
- 10:00:05 UTC: 前日の close と今日の open
- 定期 tick: 取りこぼし・失敗したジョブの再実行
どのジョブも冪等なので、重複起動や遅延実行があっても結果は変わらない。
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pytz import utc

from app.core.config import settings
from app.db.database import SessionLocal
from app.services import rollover_service
from app.utils.time_utils import DAY_RESET_HOUR_UTC, get_utc_now

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone=utc)


def run_rollover_tick():
    """close（取りこぼし分を含む）-> open を実行する"""
    db = SessionLocal()
    try:
        report = rollover_service.tick(db)
        logger.info(
            "🔄 Rollover tick %s: opened=%s closed=%s skipped=%s failed=%s",
            report.day_id, report.opened, report.closed, len(report.skipped), report.failed,
        )
        if report.missed_days:
            logger.warning("Caught up missed day(s): %s", report.missed_days)
    except Exception:
        logger.exception("💥 Rollover tick failed")
    finally:
        db.close()


def run_preopen():
    db = SessionLocal()
    try:
        report = rollover_service.preopen(db)
        logger.info("Pre-opened %s (opened=%s)", report.day_id, report.opened)
    except Exception:
        logger.exception("💥 Pre-open failed")
    finally:
        db.close()


def schedule_rollover():
    """ロールオーバー関連のジョブを登録する"""
    common = {"replace_existing": True, "coalesce": True, "max_instances": 1, "misfire_grace_time": 3600}

    preopen_minutes = settings.PREOPEN_MINUTES
    if 0 < preopen_minutes < 60:
        scheduler.add_job(
            run_preopen,
            CronTrigger(hour=DAY_RESET_HOUR_UTC - 1, minute=60 - preopen_minutes, timezone=utc),
            id="rollover_preopen",
            **common,
        )

    scheduler.add_job(
        run_rollover_tick,
        CronTrigger(hour=DAY_RESET_HOUR_UTC, minute=0, second=5, timezone=utc),
        id="rollover_boundary",
        **common,
    )

    # 起動直後にも1回実行して、停止中に取りこぼした日を回収する
    scheduler.add_job(
        run_rollover_tick,
        IntervalTrigger(minutes=settings.ROLLOVER_TICK_MINUTES, timezone=utc),
        id="rollover_tick",
        next_run_time=get_utc_now(),
        **common,
    )

    logger.info(
        "Scheduled rollover at %02d:00 UTC (pre-open %s min before, tick every %s min)",
        DAY_RESET_HOUR_UTC, preopen_minutes, settings.ROLLOVER_TICK_MINUTES,
    )


def start_scheduler():
    """アプリ起動時に呼ぶ"""
    if scheduler.running:
        logger.warning("Scheduler is already running")
        return
    schedule_rollover()
    scheduler.start()
    logger.info("✅ Scheduler started")


def shutdown_scheduler():
    """アプリ終了時に呼ぶ"""
    if not scheduler.running:
        return
    scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")
