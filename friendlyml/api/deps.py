"""
Shared request helpers for the API endpoints.
"""
import base64
import logging

import numpy as np
from fastapi import HTTPException, UploadFile, status

from friendlyml.core.config import settings
from friendlyml.utils.image import decode_image, encode_png

logger = logging.getLogger(__name__)


def read_image_upload(file: UploadFile) -> np.ndarray:
    """
    Read and decode an uploaded image.

    Raises:
        HTTPException: 413 if the upload exceeds MAX_IMAGE_SIZE_MB,
            400 if it is empty or not a decodable image
    """
    max_bytes = settings.MAX_IMAGE_SIZE_MB * 1024 * 1024
    data = file.file.read(max_bytes + 1)

    if len(data) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image exceeds {settings.MAX_IMAGE_SIZE_MB} MB",
        )
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty",
        )

    try:
        return decode_image(data)
    except ValueError as e:
        logger.warning(f"Rejected upload {file.filename}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Could not decode {file.filename or 'upload'} as an image",
        )


def png_base64(image: np.ndarray) -> str:
    return base64.b64encode(encode_png(image)).decode("ascii")
