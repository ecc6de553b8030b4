from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, List, Optional
from datetime import datetime

from app.services.points_service import ActivityType


# --- 今日画面 ---
class HeadlineView(BaseModel):
    type: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class RankView(BaseModel):
    day_id: str
    rank: Optional[int] = None
    percentile: Optional[float] = None
    change: int = 0  # 正の値ほど順位が上がった


class TodayView(BaseModel):
    day_id: str
    headline_id: Optional[int] = None
    headline: HeadlineView
    draw_id: Optional[int] = None
    draw_status: str
    tickets: int = 0
    dynamic_points_today: int = 0
    dynamic_points_balance: int = 0
    static_points: int = 0
    keys_balance: int = 0
    engaged: bool = False
    yesterday_rank: RankView


class EngageRequest(BaseModel):
    """活動の記録リクエスト"""
    event_type: ActivityType
    reference_id: Optional[str] = None


class ActivityOut(BaseModel):
    event_type: str
    raw_points: int
    awarded_points: int
    discarded_points: int  # 日次上限を超えて破棄された分
    tickets_granted: int


class EngageResponse(TodayView):
    """更新後の今日画面 + 今回の活動の結果"""
    activity: ActivityOut


# --- 抽選 ---
class Winner(BaseModel):
    user_id: int
    tickets: int
    prize_tier: Optional[str] = None
    prize_type: Optional[str] = None
    prize_amount: Optional[float] = None
    description: Optional[str] = None


class DrawView(BaseModel):
    day_id: str
    status: str
    prize_pool: List[Dict[str, Any]] = []
    tickets: int = 0
    total_entries: int = 0
    total_tickets: int = 0
    winners: List[Winner] = []
    my_prize: Optional[Winner] = None
    executed_at: Optional[datetime] = None


# --- ポイント ---
class PointsView(BaseModel):
    day_id: str
    static_points: int
    dynamic_points_today: int
    dynamic_points_balance: int
    dynamic_cap: int
    keys_balance: int
    points_per_key: int
    conversion_cap_remaining: int  # Keys単位


class ConvertRequest(BaseModel):
    amount: int  # 変換するダイナミックポイント


class ConvertResponse(BaseModel):
    day_id: str
    points: int
    keys: int
    dynamic_points_balance: int
    keys_balance: int
    keys_remaining_today: int


class PointsHistoryItem(BaseModel):
    id: int
    day_id: str
    event_type: str
    raw_points: int
    awarded_points: int
    tickets_granted: int
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# --- リーダーボード ---
class LeaderboardEntry(BaseModel):
    user_id: int
    rank: int
    dynamic_points: int
    tickets: int
    percentile: float


class LeaderboardView(BaseModel):
    day_id: str
    total_users: int
    ranks: List[LeaderboardEntry] = []
    me: Optional[RankView] = None


# --- 運用 ---
class RolloverReportOut(BaseModel):
    day_id: str
    opened: List[str] = []
    closed: List[str] = []
    skipped: List[str] = []
    failed: List[str] = []
    missed_days: List[str] = []


class DrawExecuteResponse(BaseModel):
    day_id: str
    status: str
    winners: List[Winner] = []
