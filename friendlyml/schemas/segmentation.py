"""
Pydantic schemas for segmentation responses.

Images are returned as base64-encoded PNGs.
"""
from typing import Dict, List

from pydantic import BaseModel, Field


class PersonSegmentationResponse(BaseModel):
    """Person / background segmentation of one image."""
    width: int
    height: int
    person_ratio: float = Field(..., ge=0, le=1, description="Fraction of pixels labelled person")
    mask_person_png: str
    mask_background_png: str


class BodyPart(BaseModel):
    id: int
    color: List[int] = Field(..., min_length=3, max_length=3)


class PartSegmentationResponse(BaseModel):
    """Body part segmentation of one image."""
    width: int
    height: int
    image_png: str
    part_pixel_counts: Dict[str, int]
    body_parts: Dict[str, BodyPart]
