# app/api/api.py
from fastapi import APIRouter

from app.api.routes import integrations

api_router = APIRouter()
api_router.include_router(
    integrations.router, prefix="/integrations", tags=["integrations"]
)
