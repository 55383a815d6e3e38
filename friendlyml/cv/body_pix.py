"""
BodyPix: person and body part segmentation

Segments people from the background and labels body parts using a
human parsing segmentation model. Works on single images or on frames
pulled from a video source given at construction.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import numpy as np

from friendlyml.core.config import settings
from friendlyml.cv.palette import BODYPIX_PALETTE, Palette, build_palette, color_to_rgb
from friendlyml.cv.segmentation_model import SemanticSegmentationModel
from friendlyml.utils.callbacks import Callback, call_callback, is_callback
from friendlyml.utils.image import is_image_like, is_video_source, mask_to_rgba, open_video, to_rgb_array

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "model_name": settings.BODYPIX_MODEL,
    "segmentation_threshold": settings.SEGMENTATION_THRESHOLD,
    "palette": BODYPIX_PALETTE,
    "background_label": "Background",
    "device": settings.DEVICE,
}

NO_INPUT_MESSAGE = (
    "No input image provided. If you want to segment a video, "
    "pass the video source in the constructor."
)


@dataclass
class PersonSegmentation:
    """Binary person mask, 1 = person."""
    width: int
    height: int
    data: np.ndarray  # (H, W) uint8


@dataclass
class PartSegmentation:
    """Body part ids per pixel, -1 = background."""
    width: int
    height: int
    data: np.ndarray  # (H, W) int32


class BodyPix:
    """
    Person segmentation and body part segmentation.

    Options (constructor or per call, per call values persist):
    - segmentation_threshold: minimum person probability (default 0.5)
    - palette: part name -> {"id", "color"} used to colour part images;
      kept only when it covers every part the model produces
    - model_name / device / background_label: constructor only
    """

    def __init__(
        self,
        video=None,
        options: Optional[Dict[str, Any]] = None,
        callback: Optional[Callback] = None,
        model: Optional[SemanticSegmentationModel] = None,
    ):
        """
        Initialize BodyPix.

        Args:
            video: Optional default input (cv2.VideoCapture, device index or path)
            options: Overrides for DEFAULTS
            callback: Called with (error, self) once the model is loaded
            model: Preloaded segmentation backend (skips loading)
        """
        options = options or {}
        self.video = open_video(video) if video is not None else None
        self.model = model
        self.model_ready = False
        self.ready = False
        self.background_id = 0
        self.config = {
            key: options[key] if options.get(key) is not None else default
            for key, default in DEFAULTS.items()
        }

        call_callback(self.load_model, callback)

    def load_model(self) -> "BodyPix":
        """Load the segmentation backend and align the palette with its labels."""
        if self.model is None:
            self.model = SemanticSegmentationModel(self.config["model_name"], device=self.config["device"])

        background_id = self.model.find_label_id(self.config["background_label"])
        if background_id is None:
            logger.warning(
                f"Model has no '{self.config['background_label']}' label, using class 0 as background"
            )
            background_id = 0
        self.background_id = background_id

        if not self._covers_parts(self.config["palette"]):
            logger.info("Palette does not match model labels, building one from the model")
            self.config["palette"] = build_palette(self.model.id2label, self.model.id2label[self.background_id])

        self.model_ready = True
        self.ready = True
        return self

    def _part_labels(self) -> Iterable[str]:
        return [label for label_id, label in self.model.id2label.items() if label_id != self.background_id]

    def _covers_parts(self, palette: Optional[Palette]) -> bool:
        return bool(palette) and all(label in palette for label in self._part_labels())

    def body_parts_spec(self, color_options: Optional[Palette] = None) -> Palette:
        """
        Return the palette used for part images.

        Args:
            color_options: Candidate palette; used when it covers every part
                the model produces, otherwise the configured palette is used

        Returns:
            Part name -> {"id": int, "color": [r, g, b]}
        """
        palette = self.config["palette"]
        if color_options is not None:
            if self._covers_parts(color_options):
                palette = color_options
            else:
                logger.warning("Palette is missing body parts, falling back to the configured palette")

        return {
            part: {"id": int(entry["id"]), "color": color_to_rgb(entry["color"])}
            for part, entry in palette.items()
        }

    # ------------------------------------------------------------------
    # Argument handling
    # ------------------------------------------------------------------

    def _resolve_call_args(self, image_or_options_or_callback, config_or_callback, callback) -> Tuple[Any, Dict, Optional[Callback]]:
        image = None
        options: Dict[str, Any] = {}
        cb = None

        first = image_or_options_or_callback
        if is_image_like(first):
            image = first
        elif isinstance(first, dict):
            options = first
        elif is_callback(first):
            cb = first
        elif first is not None:
            raise ValueError(f"Unsupported input of type {type(first).__name__}")

        if isinstance(config_or_callback, dict):
            options = config_or_callback
        elif is_callback(config_or_callback):
            cb = config_or_callback

        if is_callback(callback):
            cb = callback

        if image is None:
            if self.video is None:
                raise ValueError(NO_INPUT_MESSAGE)
            image = self.video

        return image, options, cb

    def _update_config(self, options: Dict[str, Any], keys: Iterable[str]) -> None:
        for key in keys:
            if options.get(key) is not None:
                self.config[key] = options[key]

    def _person_mask(self, probabilities: np.ndarray) -> np.ndarray:
        person_probability = 1.0 - probabilities[self.background_id]
        return person_probability >= self.config["segmentation_threshold"]

    # ------------------------------------------------------------------
    # Person segmentation
    # ------------------------------------------------------------------

    def segment(self, image_or_options_or_callback=None, config_or_callback=None, callback: Optional[Callback] = None) -> Dict[str, Any]:
        """
        Segment people from the background.

        Args:
            image_or_options_or_callback: Image input, options dict or callback.
                Omit to use the constructor video.
            config_or_callback: Options dict (segmentation_threshold) or callback
            callback: Callback receiving (error, result)

        Returns:
            {
                "mask_background": RGBA, background opaque black, person transparent,
                "mask_person": RGBA, person opaque black, background transparent,
                "raw": PersonSegmentation
            }

        Raises:
            ValueError: If no image is given and there is no video
        """
        image, options, cb = self._resolve_call_args(image_or_options_or_callback, config_or_callback, callback)
        return call_callback(self._segment_internal, cb, image, options)

    def _segment_internal(self, image, options: Dict[str, Any]) -> Dict[str, Any]:
        self._update_config(options, ("segmentation_threshold",))

        frame = to_rgb_array(image)
        probabilities = self.model.predict_probabilities(frame)
        person = self._person_mask(probabilities)
        height, width = person.shape

        return {
            "mask_background": mask_to_rgba(~person),
            "mask_person": mask_to_rgba(person),
            "raw": PersonSegmentation(width=width, height=height, data=person.astype(np.uint8)),
        }

    # ------------------------------------------------------------------
    # Part segmentation
    # ------------------------------------------------------------------

    def segment_with_parts(self, image_or_options_or_callback=None, config_or_callback=None, callback: Optional[Callback] = None) -> Dict[str, Any]:
        """
        Segment people and label their body parts.

        Same argument rules as :meth:`segment`; options may also carry a
        ``palette``.

        Returns:
            {
                "image": RGBA coloured by part (background white),
                "raw": PartSegmentation,
                "body_parts": palette used
            }
        """
        image, options, cb = self._resolve_call_args(image_or_options_or_callback, config_or_callback, callback)
        return call_callback(self._segment_with_parts_internal, cb, image, options)

    def _segment_with_parts_internal(self, image, options: Dict[str, Any]) -> Dict[str, Any]:
        self._update_config(options, ("segmentation_threshold",))

        # Only a palette covering every part is used and kept
        body_parts = self.body_parts_spec(options.get("palette"))
        if options.get("palette") is not None and self._covers_parts(options["palette"]):
            self.config["palette"] = options["palette"]

        frame = to_rgb_array(image)
        probabilities = self.model.predict_probabilities(frame)
        person = self._person_mask(probabilities)

        # Best part among non-background classes for every person pixel
        part_scores = probabilities.copy()
        part_scores[self.background_id] = -1.0
        best_part = part_scores.argmax(axis=0)

        data = np.where(person, best_part, -1).astype(np.int32)
        height, width = data.shape

        colored = np.full((height, width, 4), 255, dtype=np.uint8)
        for entry in body_parts.values():
            colored[data == entry["id"]] = entry["color"] + [255]

        return {
            "image": colored,
            "raw": PartSegmentation(width=width, height=height, data=data),
            "body_parts": body_parts,
        }


def body_pix(video_or_options_or_callback=None, options_or_callback=None, callback: Optional[Callback] = None) -> BodyPix:
    """
    Factory function to create a BodyPix instance.

    Accepts ``(video?, options?, callback?)`` in any of their natural
    combinations, e.g. ``body_pix(capture, {"segmentation_threshold": 0.7})``
    or ``body_pix(on_ready)``.
    """
    video = None
    options: Dict[str, Any] = {}
    cb = callback

    first = video_or_options_or_callback
    if is_video_source(first) or isinstance(first, (str, Path)) or (isinstance(first, int) and not isinstance(first, bool)):
        video = first
    elif isinstance(first, dict):
        options = first
    elif is_callback(first):
        cb = first

    if isinstance(options_or_callback, dict):
        options = options_or_callback
    elif is_callback(options_or_callback):
        cb = options_or_callback

    return BodyPix(video, options, cb)
