from fastapi import APIRouter

from . import contracts, credits

api_router = APIRouter()

# Include sub-routers
api_router.include_router(contracts.router, prefix="/contracts", tags=["contracts"])
api_router.include_router(credits.router, prefix="/credits", tags=["credits"])
