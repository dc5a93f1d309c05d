# premium_api/api/v1/router.py
from fastapi import APIRouter

from premium_api.api.v1.endpoints import subscriptions, admin

api_v1_router = APIRouter()
api_v1_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_v1_router.include_router(admin.router, prefix="/admin", tags=["admin"])
