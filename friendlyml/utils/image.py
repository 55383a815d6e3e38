"""
Image input normalisation.

Model wrappers accept numpy arrays, torch tensors, image file paths,
encoded image bytes, OpenCV video captures and anything exposing the
numpy array interface (PIL images). Everything is turned into an RGB
``uint8`` array of shape (H, W, 3) before reaching a model.
"""
import logging
import os
from pathlib import Path
from typing import Any, Sequence, Union

import cv2
import numpy as np
import torch

logger = logging.getLogger(__name__)

VideoSource = Union[cv2.VideoCapture, int, str, Path]


def is_video_source(obj: Any) -> bool:
    return isinstance(obj, cv2.VideoCapture)


def is_image_like(obj: Any) -> bool:
    """Whether ``obj`` can be passed to :func:`to_rgb_array`."""
    if obj is None or isinstance(obj, (dict, bool)):
        return False
    if isinstance(obj, (np.ndarray, torch.Tensor, bytes, bytearray, str, Path, cv2.VideoCapture)):
        return True
    return hasattr(obj, "__array_interface__")


def open_video(source: VideoSource) -> cv2.VideoCapture:
    """
    Open a video capture from a device index or file path.

    Raises:
        ValueError: If the capture cannot be opened
    """
    if isinstance(source, cv2.VideoCapture):
        capture = source
    else:
        capture = cv2.VideoCapture(source if isinstance(source, int) else str(source))

    if not capture.isOpened():
        raise ValueError(f"Could not open video source: {source}")

    return capture


def read_frame(capture: cv2.VideoCapture) -> np.ndarray:
    """Read the next frame of a capture as RGB."""
    ok, frame = capture.read()
    if not ok or frame is None:
        raise ValueError("Could not read a frame from the video source")
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


def to_rgb_array(source: Any) -> np.ndarray:
    """
    Convert any supported image input to an RGB uint8 array.

    Args:
        source: ndarray (H x W, H x W x 1/3/4), torch tensor (HWC or CHW),
            image file path, encoded image bytes, cv2.VideoCapture or
            an object exposing ``__array_interface__``

    Returns:
        RGB image as numpy array (H, W, 3), dtype uint8

    Raises:
        ValueError: If the input is missing, empty, unreadable or unsupported
    """
    if source is None:
        raise ValueError("Invalid image: empty or None")

    if isinstance(source, cv2.VideoCapture):
        return read_frame(source)

    if isinstance(source, (str, Path)):
        path = str(source)
        if not os.path.exists(path):
            raise ValueError(f"Image file not found: {path}")
        image = cv2.imread(path, cv2.IMREAD_UNCHANGED)
        if image is None:
            raise ValueError(f"Could not read image file: {path}")
        return _from_opencv(image)

    if isinstance(source, (bytes, bytearray)):
        return decode_image(bytes(source))

    if isinstance(source, torch.Tensor):
        array = source.detach().cpu().numpy()
        # CHW -> HWC
        if array.ndim == 3 and array.shape[0] in (1, 3, 4) and array.shape[2] not in (1, 3, 4):
            array = np.transpose(array, (1, 2, 0))
    elif isinstance(source, np.ndarray) or hasattr(source, "__array_interface__"):
        array = np.asarray(source)
    else:
        raise ValueError(
            f"Unsupported image input of type {type(source).__name__}. "
            "Pass a numpy array, torch tensor, image path, encoded bytes or video capture."
        )

    return _normalize_array(array)


def _normalize_array(array: np.ndarray) -> np.ndarray:
    if array.size == 0:
        raise ValueError("Invalid image: empty array")

    if array.ndim == 2:
        array = array[:, :, np.newaxis]

    if array.ndim != 3 or array.shape[2] not in (1, 3, 4):
        raise ValueError(f"Invalid image shape: {array.shape}, expected (H, W), (H, W, 3) or (H, W, 4)")

    if array.shape[2] == 1:
        array = np.repeat(array, 3, axis=2)
    elif array.shape[2] == 4:
        array = array[:, :, :3]

    if np.issubdtype(array.dtype, np.floating):
        # Floats in [0, 1] are treated as normalised intensities
        if array.max() <= 1.0:
            array = array * 255.0
        array = np.clip(np.rint(array), 0, 255)
    elif array.dtype != np.uint8:
        array = np.clip(array, 0, 255)

    return np.ascontiguousarray(array.astype(np.uint8))


def _from_opencv(image: np.ndarray) -> np.ndarray:
    """Convert an OpenCV (BGR / BGRA / gray) image to RGB."""
    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    elif image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGB)
    else:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    return _normalize_array(image)


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (PNG, JPEG, ...) to RGB."""
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED) if buffer.size else None
    if image is None:
        raise ValueError("Could not decode image bytes")
    return _from_opencv(image)


def encode_png(image: np.ndarray) -> bytes:
    """Encode an RGB / RGBA / single channel array as PNG bytes."""
    if image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_RGBA2BGRA)

    ok, encoded = cv2.imencode(".png", image)
    if not ok:
        raise ValueError(f"Could not encode image of shape {image.shape} as PNG")
    return encoded.tobytes()


def mask_to_rgba(
    mask: np.ndarray,
    foreground: Sequence[int] = (0, 0, 0, 255),
    background: Sequence[int] = (0, 0, 0, 0),
) -> np.ndarray:
    """
    Paint a boolean mask as an RGBA image.

    Args:
        mask: Boolean array (H, W)
        foreground: RGBA value for True pixels
        background: RGBA value for False pixels

    Returns:
        RGBA image (H, W, 4), dtype uint8
    """
    mask = np.asarray(mask, dtype=bool)
    rgba = np.empty(mask.shape + (4,), dtype=np.uint8)
    rgba[...] = np.asarray(background, dtype=np.uint8)
    rgba[mask] = np.asarray(foreground, dtype=np.uint8)
    return rgba
