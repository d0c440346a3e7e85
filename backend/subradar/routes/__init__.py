from fastapi import APIRouter
from subradar.routes import subscriptions

api_router = APIRouter()

api_router.include_router(subscriptions.router, prefix="/users", tags=["subscriptions"])
