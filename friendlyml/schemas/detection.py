"""
Pydantic schemas for object detection responses.
"""
from typing import List

from pydantic import BaseModel, Field


class Detection(BaseModel):
    """One detected object."""
    label: str
    confidence: float = Field(..., ge=0, le=1)
    x: float = Field(..., description="Left edge as a fraction of image width")
    y: float = Field(..., description="Top edge as a fraction of image height")
    w: float = Field(..., description="Width as a fraction of image width")
    h: float = Field(..., description="Height as a fraction of image height")
    bbox: List[int] = Field(..., min_length=4, max_length=4, description="[x, y, w, h] in pixels")


class DetectionResponse(BaseModel):
    """Detections for one uploaded image."""
    width: int
    height: int
    count: int
    detections: List[Detection]
