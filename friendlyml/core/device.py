"""
Inference device selection shared by every model wrapper.
"""
import logging
from typing import Optional

import torch

logger = logging.getLogger(__name__)


def resolve_device(requested_device: Optional[str] = None) -> str:
    """
    Get available device with fallback

    Priority: requested device if available, otherwise CPU.
    None means "pick the best available" (CUDA > MPS > CPU).
    """
    if requested_device is None:
        if torch.cuda.is_available():
            return "cuda"
        if torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    requested_device = requested_device.lower()
    if requested_device.startswith("cuda") and torch.cuda.is_available():
        return requested_device
    elif requested_device == "mps" and torch.backends.mps.is_available():
        return "mps"
    else:
        if requested_device != "cpu":
            logger.warning(f"{requested_device} not available, falling back to CPU")
        return "cpu"
