from fastapi import APIRouter
from monetization.api.v1.admin import earnings, withdrawals, ledger

router = APIRouter()

router.include_router(earnings.router, prefix="/earnings", tags=["Admin - Earnings"])
router.include_router(withdrawals.router, prefix="/withdrawals", tags=["Admin - Withdrawals"])
router.include_router(ledger.router, prefix="/ledger", tags=["Admin - Ledger"])
