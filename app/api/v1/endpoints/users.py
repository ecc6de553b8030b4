# daily-layer-backend/app/api/v1/endpoints/users.py

import logging

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    status,
    Header,
)
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import IdempotencyConflict
from app.db.database import get_db, insert_unique
from app.db import models
from app.schemas import user as user_schema
from app.services import points_service

router = APIRouter()
logger = logging.getLogger(__name__)


def get_current_user(
    db: Session = Depends(get_db),
    # フロントエンドから "X-Firebase-Uid" というヘッダーでUIDを受け取る
    x_firebase_uid: str | None = Header(default=None),
):
    """
    リクエストヘッダーのUIDを元に、現在のユーザーを特定する。
    """
    if x_firebase_uid is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="認証情報(X-Firebase-Uid)が不足しています",
        )

    # DBからユーザーを検索
    user = (
        db.query(models.User).filter(models.User.firebase_uid == x_firebase_uid).first()
    )

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="ユーザーが見つかりません。先に登録してください。",
        )
    return user


def _with_points(db: Session, user: models.User) -> user_schema.UserWithPoints:
    account = points_service.get_account(db, user.id)
    data = user_schema.UserBase.model_validate(user).model_dump()
    return user_schema.UserWithPoints(
        **data,
        static_points=account.static_points if account else 0,
        dynamic_points=account.dynamic_points if account else 0,
        keys_balance=account.keys_balance if account else 0,
    )


@router.get("/me", response_model=user_schema.UserWithPoints)
def read_users_me(
    db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)
):
    """
    現在のユーザー情報を取得します（ポイント残高つき）。
    """
    return _with_points(db, current_user)


@router.post("/", response_model=user_schema.UserWithPoints)
def create_user(user: user_schema.UserCreate, db: Session = Depends(get_db)):
    """
    新規ユーザーをデータベースに登録します。すでに存在する場合は既存のユーザー情報を返します。
    """
    # すでに登録済みかチェック
    db_user = (
        db.query(models.User)
        .filter(models.User.firebase_uid == user.firebase_uid)
        .first()
    )
    if db_user:  # すでに存在する場合はそのまま返す
        return _with_points(db, db_user)

    new_user = models.User(
        firebase_uid=user.firebase_uid,
        username=user.username,
        email=user.email,
    )
    try:
        insert_unique(db, new_user)
    except IdempotencyConflict:
        # 同時登録: 先に作られた方を返す
        db_user = (
            db.query(models.User)
            .filter(models.User.firebase_uid == user.firebase_uid)
            .first()
        )
        return _with_points(db, db_user)

    # 登録ボーナス（スタティックポイント）
    if settings.SIGNUP_BONUS_POINTS > 0:
        points_service.credit_static(
            db,
            new_user.id,
            settings.SIGNUP_BONUS_POINTS,
            points_service.StaticSource.SIGNUP_BONUS,
            reference="signup",
        )

    db.refresh(new_user)
    logger.info("🎉 Registered user %s", new_user.id)
    return _with_points(db, new_user)


@router.post("/me/followers", response_model=user_schema.UserWithPoints)
def attest_followers(
    request: user_schema.FollowerAttestationRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """
    フォロワー数の認証結果を反映する（増えた分だけスタティックポイントを加算）
    """
    points_service.attest_followers(db, current_user.id, request.follower_count)
    return _with_points(db, current_user)
