from pydantic import BaseModel, EmailStr, ConfigDict, Field
from typing import Optional
from datetime import datetime


class UserBase(BaseModel):
    """
    APIでユーザー情報を返すときの基本スキーマ
    """

    id: int  # データベースのユーザーID
    firebase_uid: str
    username: str
    email: EmailStr
    created_at: Optional[datetime] = None

    # SQLAlchemyモデル（models.User）から
    # Pydanticモデル（UserBase）への自動変換を有効にする
    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    """
    APIがユーザー作成時にリクエストボディとして受け取るスキーマ
    """

    firebase_uid: str
    username: str
    email: EmailStr


class UserWithPoints(UserBase):
    """ポイント口座の残高つき"""

    static_points: int = 0
    dynamic_points: int = 0
    keys_balance: int = 0


# --- リクエストスキーマ ---
class FollowerAttestationRequest(BaseModel):
    """フォロワー数の認証結果（外部の検証済みデータ）"""
    follower_count: int = Field(ge=0)
