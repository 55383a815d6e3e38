"""
Process-wide model instances.

Models are expensive to load, so the HTTP layer (and startup preloading)
shares one instance of each. Instances are created on first use; each
has its own lock so concurrent first requests load it only once.
"""
import logging
import threading
from typing import Callable, Dict, Optional

from friendlyml.cv.body_pix import BodyPix
from friendlyml.cv.object_detector import ObjectDetector
from friendlyml.cv.unet import UNet

logger = logging.getLogger(__name__)


# ========================================================================
# Singleton Instances
# ========================================================================

_object_detector: Optional[ObjectDetector] = None
_body_pix: Optional[BodyPix] = None
_unet: Optional[UNet] = None

_object_detector_lock = threading.Lock()
_body_pix_lock = threading.Lock()
_unet_lock = threading.Lock()


def get_object_detector() -> ObjectDetector:
    """
    Get singleton object detector instance.

    Example:
        detector = get_object_detector()
        detections = detector.detect("street.jpg")
    """
    global _object_detector

    if _object_detector is None:
        with _object_detector_lock:
            if _object_detector is None:
                _object_detector = ObjectDetector("cocossd")

    return _object_detector


def get_body_pix() -> BodyPix:
    """Get singleton BodyPix instance."""
    global _body_pix

    if _body_pix is None:
        with _body_pix_lock:
            if _body_pix is None:
                _body_pix = BodyPix()

    return _body_pix


def get_unet() -> UNet:
    """Get singleton UNet (face) instance."""
    global _unet

    if _unet is None:
        with _unet_lock:
            if _unet is None:
                _unet = UNet("face")

    return _unet


MODEL_LOADERS: Dict[str, Callable[[], object]] = {
    "detector": get_object_detector,
    "bodypix": get_body_pix,
    "unet": get_unet,
}


def reset_models() -> None:
    """Drop the cached instances (used by tests)."""
    global _object_detector, _body_pix, _unet
    with _object_detector_lock, _body_pix_lock, _unet_lock:
        _object_detector = None
        _body_pix = None
        _unet = None
