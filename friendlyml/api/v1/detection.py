"""
Object detection API endpoints.

- POST /detect - Detect COCO objects in an uploaded image
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from friendlyml.api.deps import read_image_upload
from friendlyml.cv.object_detector import ObjectDetector
from friendlyml.schemas import DetectionResponse
from friendlyml.services.model_service import get_object_detector

logger = logging.getLogger(__name__)

router = APIRouter(tags=["detection"])


@router.post(
    "/detect",
    response_model=DetectionResponse,
    status_code=status.HTTP_200_OK,
    summary="Detect objects",
    description="""
    Detect objects of the 80 COCO classes in an uploaded image.

    Boxes are returned both as fractions of the image size (x, y, w, h)
    and in pixels (bbox). Use conf_threshold to override the configured
    minimum confidence for this request.
    """,
)
def detect_objects(
    file: UploadFile = File(...),
    conf_threshold: Optional[float] = Form(None, ge=0, le=1),
    detector: ObjectDetector = Depends(get_object_detector),
) -> DetectionResponse:
    """Detect objects in an uploaded image."""
    image = read_image_upload(file)

    try:
        detections = detector.detect(image, conf_threshold=conf_threshold)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    except Exception as e:
        logger.error(f"Detection failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to detect objects: {str(e)}",
        )

    height, width = image.shape[:2]
    return DetectionResponse(
        width=width,
        height=height,
        count=len(detections),
        detections=detections,
    )
