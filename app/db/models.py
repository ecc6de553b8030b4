from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    ForeignKey,
    DateTime,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.database import Base


# day_id は "YYYY-MM-DD"（10:00 UTC 区切り）
DAY_ID_LENGTH = 10


# --- 1. User Model ---
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # MySQLではStringに長さ指定が必須 (特にindex/uniqueをつける場合)
    firebase_uid = Column(String(255), unique=True, index=True)
    username = Column(String(255))
    email = Column(String(255))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # リレーション
    points_account = relationship("PointsAccount", back_populates="user", uselist=False)
    daily_states = relationship("DailyState", back_populates="user")


# --- 2. PointsAccount Model (ポイント口座: ユーザーごとに1行) ---
class PointsAccount(Base):
    __tablename__ = "points_accounts"

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)

    # スタティックポイント: フォロワー数・登録ボーナスなど（増加のみ、変換不可）
    static_points = Column(Integer, default=0, nullable=False)
    # ダイナミックポイント: 日々の活動で獲得（未変換残高、日をまたいで保持）
    dynamic_points = Column(Integer, default=0, nullable=False)
    lifetime_dynamic_earned = Column(Integer, default=0, nullable=False)
    lifetime_dynamic_converted = Column(Integer, default=0, nullable=False)
    # Keys: 使用可能な通貨（ダイナミックポイントの変換でのみ増える）
    keys_balance = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="points_account")


# --- 3. StaticPointsEvent Model (スタティックポイント台帳: 追記のみ) ---
class StaticPointsEvent(Base):
    __tablename__ = "static_points_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    source = Column(String(50), index=True)  # 'ig_followers' | 'signup_bonus' など
    amount = Column(Integer, default=0)
    reference = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# --- 4. PointsDay Model (ユーザー×日の獲得カウンタ) ---
class PointsDay(Base):
    __tablename__ = "points_days"
    __table_args__ = (UniqueConstraint("user_id", "day_id", name="uq_points_days_user_day"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    day_id = Column(String(DAY_ID_LENGTH), index=True)

    # 上限適用後に残高へ加算された分（DYNAMIC_DAILY_CAP 以下）
    dynamic_earned = Column(Integer, default=0, nullable=False)
    # 上限適用前の活動ポイント（チケット閾値の判定に使う）
    activity_points = Column(Integer, default=0, nullable=False)
    # 上限を超えて破棄された分
    discarded_points = Column(Integer, default=0, nullable=False)
    # 今日変換したKeys
    keys_converted = Column(Integer, default=0, nullable=False)

    first_earned_at = Column(DateTime(timezone=True), nullable=True)
    last_earned_at = Column(DateTime(timezone=True), nullable=True)


# --- 5. ActivityEvent Model (ダイナミックポイント台帳) ---
class ActivityEvent(Base):
    __tablename__ = "activity_events"
    __table_args__ = (Index("ix_activity_events_user_day_type", "user_id", "day_id", "event_type"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    day_id = Column(String(DAY_ID_LENGTH), index=True)
    event_type = Column(String(50))
    reference_id = Column(String(255), nullable=True)

    base_points = Column(Integer, default=0)
    raw_points = Column(Integer, default=0)  # 逓減・倍率適用後
    awarded_points = Column(Integer, default=0)  # 日次上限適用後
    tickets_granted = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


# --- 6. KeyConversion Model (変換ログ: 取り消し不可) ---
class KeyConversion(Base):
    __tablename__ = "key_conversions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    day_id = Column(String(DAY_ID_LENGTH), index=True)
    points = Column(Integer)
    keys = Column(Integer)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# --- 7. DailyHeadline Model (その日のヘッドライン: 1日1件) ---
class DailyHeadline(Base):
    __tablename__ = "daily_headlines"

    id = Column(Integer, primary_key=True, index=True)
    day_id = Column(String(DAY_ID_LENGTH), unique=True, index=True)
    # 'reward' | 'multiplier' | 'chance'
    headline_type = Column(String(32))
    payload = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# --- 8. DailyDraw Model (抽選: 1日1件) ---
class DailyDraw(Base):
    __tablename__ = "daily_draws"

    id = Column(Integer, primary_key=True, index=True)
    day_id = Column(String(DAY_ID_LENGTH), unique=True, index=True)
    # ステータス: 'pending' -> 'closing' -> 'executed'（一方向）
    status = Column(String(16), default="pending", nullable=False)
    prize_pool = Column(JSON)
    winners = Column(JSON, nullable=True)

    total_entries = Column(Integer, default=0)
    total_tickets = Column(Integer, default=0)
    # 監査用: 実行時に導出したシード（締め前には保存しない）
    seed = Column(String(64), nullable=True)

    closing_started_at = Column(DateTime(timezone=True), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# --- 9. DrawTicket Model (ユーザー×日のチケット数) ---
class DrawTicket(Base):
    __tablename__ = "draw_tickets"
    __table_args__ = (UniqueConstraint("user_id", "day_id", name="uq_draw_tickets_user_day"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    day_id = Column(String(DAY_ID_LENGTH), index=True)
    count = Column(Integer, default=0, nullable=False)

    first_accrued_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


# --- 10. DailyState Model (ユーザー×日の状態: オンデマンド作成) ---
class DailyState(Base):
    __tablename__ = "daily_states"
    __table_args__ = (UniqueConstraint("user_id", "day_id", name="uq_daily_states_user_day"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    day_id = Column(String(DAY_ID_LENGTH), index=True)

    headline_id = Column(Integer, ForeignKey("daily_headlines.id"))
    draw_id = Column(Integer, ForeignKey("daily_draws.id"))

    engaged = Column(Boolean, default=False, nullable=False)
    engaged_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # リレーション
    user = relationship("User", back_populates="daily_states")
    headline = relationship("DailyHeadline")
    draw = relationship("DailyDraw")


# --- 11. LeaderboardSnapshot Model (締めた日のランキング: 凍結) ---
class LeaderboardSnapshot(Base):
    __tablename__ = "leaderboard_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    day_id = Column(String(DAY_ID_LENGTH), unique=True, index=True)
    total_users = Column(Integer, default=0)
    # [{user_id, rank, dynamic_points, tickets, percentile}, ...]
    ranks = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# --- 12. RolloverJob Model (日次ジョブの実行記録) ---
class RolloverJob(Base):
    __tablename__ = "rollover_jobs"
    __table_args__ = (UniqueConstraint("day_id", "kind", name="uq_rollover_jobs_day_kind"),)

    id = Column(Integer, primary_key=True, index=True)
    day_id = Column(String(DAY_ID_LENGTH), index=True)
    kind = Column(String(16))  # 'open' | 'close'
    # ステータス: 'running' | 'done' | 'failed'
    status = Column(String(16), default="running", nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(String(512), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
