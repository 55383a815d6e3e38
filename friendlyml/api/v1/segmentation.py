"""
Segmentation API endpoints.

- POST /segment - Person / background masks
- POST /segment/parts - Body part image and pixel counts
"""
import logging

import numpy as np
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from friendlyml.api.deps import png_base64, read_image_upload
from friendlyml.cv.body_pix import BodyPix
from friendlyml.schemas import PartSegmentationResponse, PersonSegmentationResponse
from friendlyml.services.model_service import get_body_pix

logger = logging.getLogger(__name__)

router = APIRouter(tags=["segmentation"])


def _run(operation, image):
    try:
        return operation(image)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    except Exception as e:
        logger.error(f"Segmentation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to segment image: {str(e)}",
        )


@router.post(
    "/segment",
    response_model=PersonSegmentationResponse,
    status_code=status.HTTP_200_OK,
    summary="Segment people",
    description="""
    Separate people from the background.

    Returns the fraction of person pixels and two RGBA PNG masks:
    mask_person (people opaque) and mask_background (background opaque).
    """,
)
def segment_person(
    file: UploadFile = File(...),
    body_pix: BodyPix = Depends(get_body_pix),
) -> PersonSegmentationResponse:
    """Person segmentation of an uploaded image."""
    image = read_image_upload(file)
    result = _run(body_pix.segment, image)

    raw = result["raw"]
    return PersonSegmentationResponse(
        width=raw.width,
        height=raw.height,
        person_ratio=float(raw.data.mean()) if raw.data.size else 0.0,
        mask_person_png=png_base64(result["mask_person"]),
        mask_background_png=png_base64(result["mask_background"]),
    )


@router.post(
    "/segment/parts",
    response_model=PartSegmentationResponse,
    status_code=status.HTTP_200_OK,
    summary="Segment body parts",
    description="""
    Label the body parts of the people in an uploaded image.

    Returns an RGBA PNG coloured with the part palette (background white),
    the number of pixels of every visible part and the palette itself.
    """,
)
def segment_body_parts(
    file: UploadFile = File(...),
    body_pix: BodyPix = Depends(get_body_pix),
) -> PartSegmentationResponse:
    """Body part segmentation of an uploaded image."""
    image = read_image_upload(file)
    result = _run(body_pix.segment_with_parts, image)

    raw = result["raw"]
    counts = {}
    for part, entry in result["body_parts"].items():
        count = int(np.count_nonzero(raw.data == entry["id"]))
        if count:
            counts[part] = count

    return PartSegmentationResponse(
        width=raw.width,
        height=raw.height,
        image_png=png_base64(result["image"]),
        part_pixel_counts=counts,
        body_parts=result["body_parts"],
    )
