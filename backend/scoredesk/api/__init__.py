"""
API router registration
"""
from fastapi import APIRouter
from scoredesk.api.cards import router as cards_router

api_router = APIRouter(prefix="/api")

# Sub-routers
api_router.include_router(cards_router)
