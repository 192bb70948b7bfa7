from fastapi import APIRouter
from monetization.api.v1 import earnings, withdrawals
from monetization.api.v1.admin import router as admin_router

api_router = APIRouter()

api_router.include_router(earnings.router, prefix="/earnings", tags=["Earnings"])
api_router.include_router(withdrawals.router, prefix="/withdrawals", tags=["Withdrawals"])
api_router.include_router(admin_router, prefix="/admin", tags=["Admin"])
