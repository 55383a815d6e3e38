"""
Object Detection Service

Detects the 80 COCO object classes in images and video frames using
YOLOv8. Results carry a label, a confidence score and a bounding box
both normalised to the image size and in pixels.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from ultralytics import YOLO

from friendlyml.core.config import settings
from friendlyml.core.device import resolve_device
from friendlyml.utils.callbacks import Callback, call_callback, is_callback
from friendlyml.utils.image import is_video_source, open_video, to_rgb_array

logger = logging.getLogger(__name__)

# Friendly names for the default COCO detector
MODEL_ALIASES = {
    "cocossd": settings.DETECTOR_MODEL,
    "coco-ssd": settings.DETECTOR_MODEL,
    "yolo": settings.DETECTOR_MODEL,
}

DEFAULTS: Dict[str, Any] = {
    "conf_threshold": settings.DETECTOR_CONF_THRESHOLD,
    "iou_threshold": settings.DETECTOR_IOU_THRESHOLD,
    "device": settings.DEVICE,
    "labels": None,  # restrict detections to these class names
    "max_detections": 100,
}

NO_INPUT_MESSAGE = (
    "No input image provided. If you want to detect objects in a video, "
    "pass the video source in the constructor."
)


class ObjectDetector:
    """
    Detect objects in images using YOLOv8 trained on COCO

    Supports:
    - yolov8n.pt (nano) - fastest, lowest accuracy (default)
    - yolov8s.pt (small) - balanced
    - yolov8m.pt (medium) - slower, higher accuracy
    - any other ultralytics checkpoint path
    """

    def __init__(
        self,
        model_name: str = "cocossd",
        video=None,
        options: Optional[Dict[str, Any]] = None,
        callback: Optional[Callback] = None,
    ):
        """
        Initialize object detector

        Args:
            model_name: Alias ("cocossd", "yolo") or ultralytics checkpoint name
            video: Optional default input (cv2.VideoCapture, device index or path)
            options: conf_threshold, iou_threshold, device, labels, max_detections
            callback: Called with (error, self) once the model is loaded
        """
        options = options or {}
        self.model_name = MODEL_ALIASES.get(model_name.lower(), model_name)
        self.video = open_video(video) if video is not None else None
        self.config = {
            key: options[key] if options.get(key) is not None else default
            for key, default in DEFAULTS.items()
        }
        self.device = resolve_device(self.config["device"])
        self.conf_threshold = float(self.config["conf_threshold"])
        self.iou_threshold = float(self.config["iou_threshold"])

        self.model = None
        self.class_names: Dict[int, str] = {}
        self.ready = False

        call_callback(self.load_model, callback)

    def load_model(self) -> "ObjectDetector":
        logger.info(f"Initializing ObjectDetector with {self.model_name} on {self.device}")

        # Load YOLO model (will download on first run)
        self.model = YOLO(self.model_name)
        self.model.to(self.device)
        self.class_names = {int(k): v for k, v in dict(self.model.names).items()}

        self.ready = True
        logger.info("ObjectDetector initialized successfully")
        return self

    def _class_filter(self) -> Optional[List[int]]:
        """Translate the ``labels`` option to COCO class ids."""
        labels = self.config["labels"]
        if not labels:
            return None

        name_to_id = {name.lower(): class_id for class_id, name in self.class_names.items()}
        unknown = [label for label in labels if label.lower() not in name_to_id]
        if unknown:
            raise ValueError(f"Unknown labels for {self.model_name}: {unknown}")

        return [name_to_id[label.lower()] for label in labels]

    def _run_model(self, frames, conf_threshold: Optional[float] = None):
        conf = conf_threshold if conf_threshold is not None else self.conf_threshold

        # ultralytics reads numpy input as BGR
        if isinstance(frames, list):
            inputs = [np.ascontiguousarray(frame[:, :, ::-1]) for frame in frames]
        else:
            inputs = np.ascontiguousarray(frames[:, :, ::-1])

        return self.model(
            inputs,
            classes=self._class_filter(),
            conf=conf,
            iou=self.iou_threshold,
            max_det=self.config["max_detections"],
            device=self.device,
            verbose=False  # Suppress YOLO logging
        )

    def _format_result(self, result, image_shape: Tuple[int, ...]) -> List[Dict]:
        height, width = image_shape[:2]
        detections = []

        if result.boxes is None or len(result.boxes) == 0:
            return detections

        names = getattr(result, "names", None) or self.class_names

        for box in result.boxes:
            x1, y1, x2, y2 = (float(v) for v in box.xyxy[0].cpu().numpy())
            confidence = float(box.conf[0].cpu().numpy())
            class_id = int(box.cls[0].cpu().numpy())
            box_w, box_h = x2 - x1, y2 - y1

            detections.append({
                "label": names.get(class_id, str(class_id)),
                "confidence": confidence,
                "x": x1 / width,
                "y": y1 / height,
                "w": box_w / width,
                "h": box_h / height,
                "bbox": [int(x1), int(y1), int(box_w), int(box_h)],
            })

        return detections

    def detect(self, subject=None, callback: Optional[Callback] = None, conf_threshold: Optional[float] = None) -> List[Dict]:
        """
        Detect objects in a single image

        Args:
            subject: Image input (omit to read a frame from the constructor video).
                A callable in this position is taken as the callback.
            callback: Callback receiving (error, detections)
            conf_threshold: Optional override for confidence threshold

        Returns:
            List of detections, each containing:
            {
                "label": "person",
                "confidence": 0.89,
                "x": 0.12, "y": 0.30, "w": 0.25, "h": 0.60,  # fractions of image size
                "bbox": [x, y, w, h]                          # pixels
            }

        Raises:
            ValueError: If there is no subject and no video, or the input is invalid
        """
        if is_callback(subject) and callback is None:
            subject, callback = None, subject

        if subject is None:
            if self.video is None:
                raise ValueError(NO_INPUT_MESSAGE)
            subject = self.video

        return call_callback(self._detect_internal, callback, subject, conf_threshold)

    def _detect_internal(self, subject, conf_threshold: Optional[float] = None) -> List[Dict]:
        frame = to_rgb_array(subject)
        results = self._run_model(frame, conf_threshold)

        detections = []
        for result in results:
            detections.extend(self._format_result(result, frame.shape))
        return detections

    def detect_batch(self, subjects: List, callback: Optional[Callback] = None, conf_threshold: Optional[float] = None) -> List[List[Dict]]:
        """
        Detect objects in multiple images (batch inference)

        More efficient than calling detect() multiple times.

        Returns:
            List of detection lists (one per image)
        """
        return call_callback(self._detect_batch_internal, callback, subjects, conf_threshold)

    def _detect_batch_internal(self, subjects: List, conf_threshold: Optional[float] = None) -> List[List[Dict]]:
        if not subjects:
            raise ValueError("Invalid images: empty or None")

        frames = [to_rgb_array(subject) for subject in subjects]
        results = self._run_model(frames, conf_threshold)

        return [self._format_result(result, frame.shape) for result, frame in zip(results, frames)]


def object_detector(
    model_name: str = "cocossd",
    video_or_options_or_callback=None,
    options_or_callback=None,
    callback: Optional[Callback] = None,
) -> ObjectDetector:
    """
    Factory function to create ObjectDetector instance

    Accepts ``(model_name, video?, options?, callback?)`` with the optional
    arguments in any natural combination, e.g.
    ``object_detector("cocossd", {"conf_threshold": 0.6}, on_ready)``.
    """
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

    return ObjectDetector(model_name, video, options, cb)
