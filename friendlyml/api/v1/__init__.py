"""
API v1 router aggregation.
"""
from fastapi import APIRouter

from friendlyml.api.v1 import detection, segmentation

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(detection.router)
api_router.include_router(segmentation.router)

__all__ = ["api_router"]
