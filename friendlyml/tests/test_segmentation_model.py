"""
Unit tests for the semantic segmentation backend.
"""
import numpy as np
import pytest
import torch
from unittest.mock import MagicMock, patch

from friendlyml.cv.segmentation_model import SemanticSegmentationModel


@pytest.fixture
def mock_transformers():
    """Mock processor and a two class segmentation model."""
    with patch("friendlyml.cv.segmentation_model.AutoImageProcessor") as mock_processor_cls, \
            patch("friendlyml.cv.segmentation_model.AutoModelForSemanticSegmentation") as mock_model_cls:
        processor = MagicMock(return_value={"pixel_values": torch.zeros(1, 3, 2, 2)})
        mock_processor_cls.from_pretrained.return_value = processor

        model = MagicMock()
        model.config.id2label = {"0": "Background", "1": "Hair"}
        logits = torch.zeros(1, 2, 2, 2)
        logits[0, 1] = 10.0  # Hair everywhere
        model.return_value.logits = logits
        mock_model_cls.from_pretrained.return_value.to.return_value = model

        yield mock_model_cls, processor, model


@pytest.mark.unit
class TestSemanticSegmentationModel:
    """Test loading and per-pixel probabilities."""

    def test_labels_loaded(self, mock_transformers):
        """Test label maps are read from the model config with int ids."""
        instance = SemanticSegmentationModel("some/checkpoint", device="cpu")

        assert instance.id2label == {0: "Background", 1: "Hair"}
        assert instance.label2id == {"Background": 0, "Hair": 1}
        assert instance.num_labels == 2

    def test_find_label_id(self, mock_transformers):
        """Test case-insensitive label lookup."""
        instance = SemanticSegmentationModel("some/checkpoint", device="cpu")

        assert instance.find_label_id("hair") == 1
        assert instance.find_label_id("BACKGROUND") == 0
        assert instance.find_label_id("tail") is None

    def test_probabilities_at_input_size(self, mock_transformers, rgb_image):
        """Test probabilities are upsampled to the image and sum to one."""
        _, processor, _ = mock_transformers
        instance = SemanticSegmentationModel("some/checkpoint", device="cpu")

        probabilities = instance.predict_probabilities(rgb_image)

        assert probabilities.shape == (2, 4, 4)
        assert probabilities.dtype == np.float32
        np.testing.assert_allclose(probabilities.sum(axis=0), 1.0, atol=1e-5)
        assert (probabilities[1] > 0.99).all()
        processor.assert_called_once()

    def test_load_failure(self, mock_transformers):
        """Test checkpoint errors become RuntimeError."""
        mock_model_cls, _, _ = mock_transformers
        mock_model_cls.from_pretrained.side_effect = OSError("not found")

        with pytest.raises(RuntimeError, match="Failed to load segmentation model"):
            SemanticSegmentationModel("missing/checkpoint", device="cpu")
