"""
API Routes
"""
from fastapi import APIRouter

from splitledger.api.routes.splits import router as splits_router
from splitledger.api.routes.wallet import router as wallet_router

router = APIRouter()

router.include_router(splits_router, prefix="/splits", tags=["splits"])
router.include_router(wallet_router, prefix="/wallet", tags=["wallet"])
