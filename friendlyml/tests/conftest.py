"""
Pytest configuration and fixtures for testing.
"""
from typing import Dict, Optional

import numpy as np
import pytest

from friendlyml.utils.image import to_rgb_array


class FakeSegmentationModel:
    """
    Stand-in for SemanticSegmentationModel with fixed probabilities.

    Labels: 0 Background, 1 Hat, 2 Hair. For any image:
    - left half: background (p=0.9)
    - right half, top rows: hat (person p=0.9)
    - right half, bottom rows: hair (person p=0.7)
    """

    def __init__(self, id2label: Optional[Dict[int, str]] = None):
        self.id2label = id2label or {0: "Background", 1: "Hat", 2: "Hair"}
        self.label2id = {v: k for k, v in self.id2label.items()}
        self.calls = 0

    @property
    def num_labels(self) -> int:
        return len(self.id2label)

    def find_label_id(self, label: str) -> Optional[int]:
        for label_id, name in self.id2label.items():
            if name.lower() == label.lower():
                return label_id
        return None

    def predict_probabilities(self, image) -> np.ndarray:
        self.calls += 1
        frame = to_rgb_array(image)
        height, width = frame.shape[:2]
        half_w, half_h = width // 2, height // 2

        probabilities = np.zeros((self.num_labels, height, width), dtype=np.float32)
        # left half: background
        probabilities[:, :, :half_w] = np.array([0.9, 0.05, 0.05])[:, None, None]
        # right top: hat
        probabilities[:, :half_h, half_w:] = np.array([0.1, 0.7, 0.2])[:, None, None]
        # right bottom: hair
        probabilities[:, half_h:, half_w:] = np.array([0.3, 0.1, 0.6])[:, None, None]
        return probabilities


@pytest.fixture
def fake_segmentation_model():
    """Segmentation backend with known, deterministic output."""
    return FakeSegmentationModel()


@pytest.fixture
def rgb_image():
    """Small RGB test image (4x4) with a distinct value per pixel."""
    return np.arange(4 * 4 * 3, dtype=np.uint8).reshape(4, 4, 3)


@pytest.fixture
def png_bytes(rgb_image):
    """The RGB test image encoded as PNG."""
    from friendlyml.utils.image import encode_png

    return encode_png(rgb_image)


@pytest.fixture
def mock_detector():
    """Object detector returning one person."""
    from unittest.mock import MagicMock

    detector = MagicMock()
    detector.detect.return_value = [{
        "label": "person",
        "confidence": 0.9,
        "x": 0.25,
        "y": 0.0,
        "w": 0.5,
        "h": 1.0,
        "bbox": [1, 0, 2, 4],
    }]
    return detector


@pytest.fixture
def client(mock_detector, fake_segmentation_model):
    """API test client with the models replaced by test doubles."""
    from fastapi.testclient import TestClient

    from friendlyml.cv.body_pix import BodyPix
    from friendlyml.main import app
    from friendlyml.services.model_service import get_body_pix, get_object_detector

    app.dependency_overrides[get_object_detector] = lambda: mock_detector
    app.dependency_overrides[get_body_pix] = lambda: BodyPix(model=fake_segmentation_model)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
