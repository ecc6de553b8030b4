# daily-layer-backend/app/utils/time_utils.py
"""
日付境界（10:00 UTC）関連のユーティリティ関数

10:00 UTC より前は「前日」扱い。day_id は "YYYY-MM-DD" の文字列で、
文字列比較がそのまま日付順になる。
"""

from datetime import datetime, timedelta
from typing import List
from pytz import utc as UTC

DAY_RESET_HOUR_UTC = 10
DAY_ID_FORMAT = "%Y-%m-%d"


def get_utc_now() -> datetime:
    """UTCの現在時刻を取得"""
    return datetime.now(UTC)


def to_utc(dt: datetime) -> datetime:
    """日時をUTCに変換（naiveはUTCとみなす）"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(UTC)
    return UTC.localize(dt)


def get_day_id(now: datetime = None) -> str:
    """時刻から day_id を求める（10:00 UTC 区切り）"""
    now_utc = to_utc(now) if now is not None else get_utc_now()
    return (now_utc - timedelta(hours=DAY_RESET_HOUR_UTC)).strftime(DAY_ID_FORMAT)


def parse_day_id(day_id: str) -> datetime:
    return UTC.localize(datetime.strptime(day_id, DAY_ID_FORMAT))


def day_start(day_id: str) -> datetime:
    """その日が始まる境界時刻"""
    return parse_day_id(day_id) + timedelta(hours=DAY_RESET_HOUR_UTC)


def day_end(day_id: str) -> datetime:
    """その日が終わる境界時刻（次の日の開始）"""
    return day_start(day_id) + timedelta(days=1)


def next_day_id(day_id: str) -> str:
    return (parse_day_id(day_id) + timedelta(days=1)).strftime(DAY_ID_FORMAT)


def previous_day_id(day_id: str) -> str:
    return (parse_day_id(day_id) - timedelta(days=1)).strftime(DAY_ID_FORMAT)


def days_between(start_day_id: str, end_day_id: str) -> int:
    """end - start の日数"""
    return (parse_day_id(end_day_id) - parse_day_id(start_day_id)).days


def iter_day_ids(start_day_id: str, end_day_id: str) -> List[str]:
    """start 以上 end 未満の day_id を日付順に返す"""
    days = []
    current = start_day_id
    while current < end_day_id:
        days.append(current)
        current = next_day_id(current)
    return days


def day_weekday(day_id: str) -> int:
    """曜日（月曜=0）"""
    return parse_day_id(day_id).weekday()
