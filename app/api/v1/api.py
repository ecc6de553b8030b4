from fastapi import APIRouter
from .endpoints import (
    users,
    today,
    admin,
)

api_router = APIRouter()

api_router.include_router(users.router, prefix="/users", tags=["Users"])
api_router.include_router(today.router, prefix="/today", tags=["Today"])
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])
