# daily-layer-backend/app/utils/__init__.py
"""
ユーティリティモジュール
"""

from .time_utils import (
    get_utc_now,
    to_utc,
    get_day_id,
    day_start,
    day_end,
    next_day_id,
    previous_day_id,
    days_between,
    iter_day_ids,
    DAY_RESET_HOUR_UTC,
    UTC,
)
