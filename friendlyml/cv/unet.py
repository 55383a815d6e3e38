"""
UNet-style Image Segmentation

Splits an image into a feature (the face by default, or any set of
labels of the underlying segmentation model) and background, returning
cut-out images for both.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from friendlyml.core.config import settings
from friendlyml.cv.segmentation_model import SemanticSegmentationModel
from friendlyml.utils.callbacks import Callback, call_callback, is_callback
from friendlyml.utils.image import is_video_source, open_video, to_rgb_array

logger = logging.getLogger(__name__)

# alias -> (checkpoint, feature labels); None labels = everything but background
MODEL_ALIASES: Dict[str, Tuple[str, Optional[List[str]]]] = {
    "face": (settings.UNET_MODEL, None),
    "person": ("nvidia/segformer-b0-finetuned-ade-512-512", ["person"]),
}

DEFAULTS: Dict[str, Any] = {
    "feature_labels": None,
    "threshold": 0.5,
    "background_label": "background",
    "device": settings.DEVICE,
}


class UNet:
    """
    Feature / background segmentation.

    The feature probability of a pixel is the summed probability of the
    feature labels; pixels at or above ``threshold`` belong to the feature.
    """

    def __init__(
        self,
        model_name: str = "face",
        video=None,
        options: Optional[Dict[str, Any]] = None,
        callback: Optional[Callback] = None,
        model: Optional[SemanticSegmentationModel] = None,
    ):
        """
        Initialize UNet segmentation.

        Args:
            model_name: Alias ("face", "person") or HuggingFace checkpoint
            video: Optional default input (cv2.VideoCapture, device index or path)
            options: feature_labels, threshold, background_label, device
            callback: Called with (error, self) once the model is loaded
            model: Preloaded segmentation backend (skips loading)
        """
        options = options or {}
        checkpoint, alias_labels = MODEL_ALIASES.get(model_name.lower(), (model_name, None))

        self.model_name = checkpoint
        self.video = open_video(video) if video is not None else None
        self.model = model
        self.ready = False
        self.feature_ids: List[int] = []
        self.config = {
            key: options[key] if options.get(key) is not None else default
            for key, default in DEFAULTS.items()
        }
        if self.config["feature_labels"] is None:
            self.config["feature_labels"] = alias_labels

        call_callback(self.load_model, callback)

    def load_model(self) -> "UNet":
        if self.model is None:
            self.model = SemanticSegmentationModel(self.model_name, device=self.config["device"])

        self.feature_ids = self._resolve_feature_ids()
        logger.info(
            f"UNet ready, feature labels: {[self.model.id2label[i] for i in self.feature_ids]}"
        )
        self.ready = True
        return self

    def _resolve_feature_ids(self) -> List[int]:
        labels = self.config["feature_labels"]
        if labels:
            ids = []
            for label in labels:
                label_id = self.model.find_label_id(label)
                if label_id is None:
                    raise ValueError(f"Label '{label}' is not produced by model {self.model_name}")
                ids.append(label_id)
            return ids

        background_id = self.model.find_label_id(self.config["background_label"])
        if background_id is None:
            logger.warning(
                f"Model has no '{self.config['background_label']}' label, using class 0 as background"
            )
            background_id = 0
        return [label_id for label_id in sorted(self.model.id2label) if label_id != background_id]

    def segment(self, image_or_callback=None, callback: Optional[Callback] = None) -> Dict[str, Any]:
        """
        Segment the feature from the background.

        Args:
            image_or_callback: Image input or callback (omit to use the constructor video)
            callback: Callback receiving (error, result)

        Returns:
            {
                "segmentation": (H, W) float32 feature probability,
                "mask": (H, W) uint8, 255 = feature,
                "feature_mask": RGBA, image pixels where feature, transparent elsewhere,
                "background_mask": RGBA, image pixels where background,
                "raw": {"feature_mask": flat uint8, "background_mask": flat uint8}
            }
        """
        image = None
        if is_callback(image_or_callback):
            callback = image_or_callback
        elif image_or_callback is not None:
            image = image_or_callback

        if image is None:
            if self.video is None:
                raise ValueError(
                    "No input image provided. If you want to segment a video, "
                    "pass the video source in the constructor."
                )
            image = self.video

        return call_callback(self._segment_internal, callback, image)

    def _segment_internal(self, image) -> Dict[str, Any]:
        frame = to_rgb_array(image)
        probabilities = self.model.predict_probabilities(frame)

        segmentation = np.clip(probabilities[self.feature_ids].sum(axis=0), 0.0, 1.0).astype(np.float32)
        mask = (segmentation >= self.config["threshold"]).astype(np.uint8) * 255

        feature_mask = np.dstack([frame, mask])
        background_mask = np.dstack([frame, 255 - mask])

        return {
            "segmentation": segmentation,
            "mask": mask,
            "feature_mask": feature_mask,
            "background_mask": background_mask,
            "raw": {
                "feature_mask": feature_mask.ravel(),
                "background_mask": background_mask.ravel(),
            },
        }


def unet(model_name: str = "face", video_or_options_or_callback=None, options_or_callback=None, callback: Optional[Callback] = None) -> UNet:
    """Factory function to create a UNet instance."""
    video = None
    options: Dict[str, Any] = {}
    cb = callback

    for arg in (video_or_options_or_callback, options_or_callback):
        if arg is None:
            continue
        if is_video_source(arg) or isinstance(arg, (str, Path)) or (isinstance(arg, int) and not isinstance(arg, bool)):
            video = arg
        elif isinstance(arg, dict):
            options = arg
        elif is_callback(arg):
            cb = arg

    return UNet(model_name, video, options, cb)
