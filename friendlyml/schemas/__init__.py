"""
Pydantic schemas for request/response validation.
"""
from friendlyml.schemas.detection import Detection, DetectionResponse
from friendlyml.schemas.segmentation import (
    BodyPart,
    PartSegmentationResponse,
    PersonSegmentationResponse,
)

__all__ = [
    "Detection",
    "DetectionResponse",
    "BodyPart",
    "PartSegmentationResponse",
    "PersonSegmentationResponse",
]
