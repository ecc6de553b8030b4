# daily-layer-backend/app/db/seed.py
"""
デモデータの投入
python -m app.db.seed で実行するとテーブルを作り直してからデータを入れる
"""

import random

from sqlalchemy import text, MetaData
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.database import SessionLocal, engine, Base
from app.db.models import User
from app.services import points_service, rollover_service

DEMO_USERS = [
    {"firebase_uid": "demo-uid-alice", "username": "alice", "email": "alice@example.com", "followers": 850},
    {"firebase_uid": "demo-uid-bob", "username": "bob", "email": "bob@example.com", "followers": 4200},
    {"firebase_uid": "demo-uid-carol", "username": "carol", "email": "carol@example.com", "followers": 0},
    {"firebase_uid": "demo-uid-dave", "username": "dave", "email": "dave@example.com", "followers": 15000},
]

DEMO_ACTIVITIES = [
    points_service.ActivityType.DAILY_VISIT,
    points_service.ActivityType.HEADLINE_VIEW,
    points_service.ActivityType.HEADLINE_ENGAGE,
    points_service.ActivityType.QUEST_COMPLETE,
    points_service.ActivityType.SOCIAL_ACTION,
]


def create_initial_data(db: Session):
    """実際にデータを投入する共通ロジック"""

    # 1. 今日のヘッドラインと抽選
    print("📰 Opening today...")
    rollover_service.open_today(db)

    # 2. デモユーザー（登録ボーナス + フォロワー認証）
    print("👤 Creating demo users...")
    for u_data in DEMO_USERS:
        user = User(
            firebase_uid=u_data["firebase_uid"],
            username=u_data["username"],
            email=u_data["email"],
        )
        db.add(user)
        db.commit()
        db.refresh(user)

        points_service.credit_static(
            db, user.id, settings.SIGNUP_BONUS_POINTS,
            points_service.StaticSource.SIGNUP_BONUS, reference="seed",
        )
        if u_data["followers"]:
            points_service.attest_followers(db, user.id, u_data["followers"])

        # 3. 今日の活動（ランダム）
        for _ in range(random.randint(1, 6)):
            points_service.record_activity(db, user.id, random.choice(DEMO_ACTIVITIES))

    print("✨ Seeding complete!")


def reset_and_seed():
    """
    テーブルを全削除して再作成し、データを投入する。
    """
    print("💥 FORCE RESETTING DATABASE...")

    with engine.connect() as connection:
        trans = connection.begin()
        mysql = connection.dialect.name == "mysql"
        try:
            if mysql:
                # 外部キーチェックを無効化 (これで依存関係を無視して削除できる)
                connection.execute(text("SET FOREIGN_KEY_CHECKS = 0;"))

            print("   -> Reflecting and dropping all tables...")
            metadata = MetaData()
            metadata.reflect(bind=connection)
            metadata.drop_all(bind=connection)

            print("   -> Creating all tables...")
            Base.metadata.create_all(bind=connection)

            if mysql:
                connection.execute(text("SET FOREIGN_KEY_CHECKS = 1;"))

            trans.commit()
            print("✅ Database reset successful.")

        except Exception as e:
            trans.rollback()
            print(f"❌ DB Reset Error: {e}")
            return

    # データ投入はSessionで行う
    db = SessionLocal()
    try:
        create_initial_data(db)
    finally:
        db.close()


if __name__ == "__main__":
    # 直接実行された場合は、強制リセットを行う
    reset_and_seed()
