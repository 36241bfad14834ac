"""API v1 router."""

from fastapi import APIRouter

from .endpoints import playbooks

api_router = APIRouter()

api_router.include_router(playbooks.router, prefix="/playbooks", tags=["playbooks"])
