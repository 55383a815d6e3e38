"""
Semantic Segmentation Backend

Thin wrapper over a HuggingFace semantic segmentation checkpoint
(SegFormer and friends). Produces per-pixel class probabilities at the
resolution of the input image; BodyPix and UNet build their masks on top.
"""
import logging
from typing import Dict, Optional

import numpy as np
import torch
import torch.nn.functional as F
from transformers import AutoImageProcessor, AutoModelForSemanticSegmentation

from friendlyml.core.config import settings
from friendlyml.core.device import resolve_device
from friendlyml.utils.image import to_rgb_array

logger = logging.getLogger(__name__)


class SemanticSegmentationModel:
    """
    Per-pixel classifier backed by ``AutoModelForSemanticSegmentation``.

    Attributes:
        id2label: Class id -> label name, as declared by the checkpoint
        label2id: Label name -> class id
    """

    def __init__(self, model_name: str = settings.BODYPIX_MODEL, device: Optional[str] = None):
        """
        Load processor and model weights.

        Args:
            model_name: HuggingFace model name or local checkpoint directory
            device: 'cpu', 'cuda', 'mps' (defaults to settings.DEVICE)

        Raises:
            RuntimeError: If the checkpoint cannot be loaded
        """
        self.model_name = model_name
        self.device = resolve_device(device or settings.DEVICE)

        logger.info(f"Loading segmentation model: {model_name} on {self.device}")

        try:
            self.processor = AutoImageProcessor.from_pretrained(model_name)
            self.model = AutoModelForSemanticSegmentation.from_pretrained(model_name).to(self.device)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load segmentation model {model_name}: {e}")
            raise RuntimeError(f"Failed to load segmentation model '{model_name}': {e}") from e

        self.model.eval()

        self.id2label: Dict[int, str] = {int(k): v for k, v in self.model.config.id2label.items()}
        self.label2id: Dict[str, int] = {v: k for k, v in self.id2label.items()}

        logger.info(f"Segmentation model ready with {self.num_labels} labels")

    @property
    def num_labels(self) -> int:
        return len(self.id2label)

    def find_label_id(self, label: str) -> Optional[int]:
        """Case-insensitive label lookup; None when the model has no such label."""
        wanted = label.lower()
        for label_id, name in self.id2label.items():
            if name.lower() == wanted:
                return label_id
        return None

    def predict_probabilities(self, image) -> np.ndarray:
        """
        Run the model on one image.

        Args:
            image: Any input accepted by :func:`to_rgb_array`

        Returns:
            Softmax probabilities (num_labels, H, W), float32, upsampled to
            the input image size
        """
        frame = to_rgb_array(image)
        height, width = frame.shape[:2]

        inputs = self.processor(images=frame, return_tensors="pt")
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            logits = self.model(**inputs).logits
            logits = F.interpolate(logits, size=(height, width), mode="bilinear", align_corners=False)
            probabilities = logits.softmax(dim=1)[0]

        return probabilities.cpu().numpy().astype(np.float32)
