"""
Unit tests for BodyPix.

Tests person and body part segmentation including:
- Model loading and palette alignment
- Person masks and threshold handling
- Part images and custom palettes
- Calling conventions (image, options, callback, constructor video)
"""
import numpy as np
import pytest
import torch
from unittest.mock import Mock, patch

from friendlyml.cv.body_pix import BodyPix, PartSegmentation, PersonSegmentation, body_pix
from friendlyml.cv.palette import BODYPIX_PALETTE
from friendlyml.tests.conftest import FakeSegmentationModel


@pytest.fixture
def bodypix(fake_segmentation_model):
    """BodyPix instance backed by the fake segmentation model."""
    return BodyPix(model=fake_segmentation_model)


@pytest.mark.unit
class TestModelLoading:
    """Test model loading and readiness."""

    def test_ready_after_construction(self, bodypix):
        """Test instance is ready once the model is loaded."""
        assert bodypix.ready is True
        assert bodypix.model_ready is True
        assert bodypix.background_id == 0

    def test_default_palette_kept_when_it_covers_labels(self, bodypix):
        """Test default palette is used when the model labels are all in it."""
        assert bodypix.config["palette"] is BODYPIX_PALETTE

    def test_palette_built_for_unknown_labels(self):
        """Test a palette is generated for label sets outside the default."""
        model = FakeSegmentationModel({0: "background", 1: "skin", 2: "Hair"})

        instance = BodyPix(model=model)

        palette = instance.config["palette"]
        assert set(palette) == {"skin", "Hair"}
        assert palette["Hair"]["color"] == BODYPIX_PALETTE["Hair"]["color"]
        assert palette["skin"]["id"] == 1

    def test_missing_background_label_defaults_to_zero(self):
        """Test class 0 is used as background when no label matches."""
        model = FakeSegmentationModel({0: "Hat", 1: "Hair", 2: "Face"})

        instance = BodyPix(model=model)

        assert instance.background_id == 0

    def test_constructor_callback(self, fake_segmentation_model):
        """Test callback receives the ready instance."""
        callback = Mock()

        instance = BodyPix(model=fake_segmentation_model, callback=callback)

        callback.assert_called_once_with(None, instance)

    def test_factory_with_options(self, fake_segmentation_model):
        """Test factory loads the backend and applies options."""
        with patch("friendlyml.cv.body_pix.SemanticSegmentationModel", return_value=fake_segmentation_model) as mock_cls:
            instance = body_pix({"segmentation_threshold": 0.7})

        mock_cls.assert_called_once()
        assert instance.config["segmentation_threshold"] == 0.7
        assert instance.model is fake_segmentation_model

    def test_factory_with_callback_only(self, fake_segmentation_model):
        """Test factory accepts a callback as its only argument."""
        callback = Mock()

        with patch("friendlyml.cv.body_pix.SemanticSegmentationModel", return_value=fake_segmentation_model):
            instance = body_pix(callback)

        callback.assert_called_once_with(None, instance)


@pytest.mark.unit
class TestSegment:
    """Test person segmentation."""

    def test_segment_person_mask(self, bodypix, rgb_image):
        """Test person pixels are the right half of the image."""
        result = bodypix.segment(rgb_image)

        raw = result["raw"]
        assert isinstance(raw, PersonSegmentation)
        assert (raw.width, raw.height) == (4, 4)
        expected = np.zeros((4, 4), dtype=np.uint8)
        expected[:, 2:] = 1
        np.testing.assert_array_equal(raw.data, expected)

    def test_segment_rgba_masks(self, bodypix, rgb_image):
        """Test mask images are opaque on their region only."""
        result = bodypix.segment(rgb_image)

        person = result["mask_person"]
        background = result["mask_background"]
        assert person.shape == (4, 4, 4)
        assert person[0, 3].tolist() == [0, 0, 0, 255]
        assert person[0, 0].tolist() == [0, 0, 0, 0]
        assert background[0, 0].tolist() == [0, 0, 0, 255]
        assert background[0, 3].tolist() == [0, 0, 0, 0]

    def test_threshold_option_persists(self, bodypix, rgb_image):
        """Test a per-call threshold is applied and kept for later calls."""
        result = bodypix.segment(rgb_image, {"segmentation_threshold": 0.8})

        # Bottom right region has person probability 0.7
        assert result["raw"].data[:2, 2:].all()
        assert not result["raw"].data[2:, 2:].any()
        assert bodypix.config["segmentation_threshold"] == 0.8

        again = bodypix.segment(rgb_image)
        np.testing.assert_array_equal(again["raw"].data, result["raw"].data)

    def test_segment_with_callback(self, bodypix, rgb_image):
        """Test callback receives (None, result) and result is returned."""
        callback = Mock()

        result = bodypix.segment(rgb_image, callback)

        callback.assert_called_once_with(None, result)

    def test_segment_accepts_tensor(self, bodypix):
        """Test CHW torch tensors are accepted."""
        tensor = torch.zeros((3, 5, 6), dtype=torch.uint8)

        result = bodypix.segment(tensor)

        assert result["raw"].data.shape == (5, 6)

    def test_no_input_and_no_video(self, bodypix):
        """Test error when neither an image nor a video is available."""
        with pytest.raises(ValueError, match="No input image provided"):
            bodypix.segment()

    def test_unsupported_input(self, bodypix):
        """Test error for inputs that are not images."""
        with pytest.raises(ValueError, match="Unsupported input"):
            bodypix.segment(3.5)

    def test_callback_receives_error(self, bodypix):
        """Test image errors are reported to the callback and raised."""
        callback = Mock()

        with pytest.raises(ValueError):
            bodypix.segment(np.zeros((0, 0, 3), dtype=np.uint8), callback)

        error, result = callback.call_args[0]
        assert isinstance(error, ValueError)
        assert result is None

    def test_segment_uses_constructor_video(self, fake_segmentation_model, rgb_image):
        """Test frames are read from the constructor video when no image is given."""
        capture = Mock()

        with patch("friendlyml.cv.body_pix.open_video", return_value=capture):
            instance = BodyPix(video=capture, model=fake_segmentation_model)

        with patch("friendlyml.cv.body_pix.to_rgb_array", return_value=rgb_image) as mock_convert:
            result = instance.segment()

        mock_convert.assert_called_once_with(capture)
        assert result["raw"].data[:, 2:].all()


@pytest.mark.unit
class TestSegmentWithParts:
    """Test body part segmentation."""

    def test_part_ids(self, bodypix, rgb_image):
        """Test each person pixel carries its best part id."""
        result = bodypix.segment_with_parts(rgb_image)

        raw = result["raw"]
        assert isinstance(raw, PartSegmentation)
        assert (raw.data[:, :2] == -1).all()
        assert (raw.data[:2, 2:] == BODYPIX_PALETTE["Hat"]["id"]).all()
        assert (raw.data[2:, 2:] == BODYPIX_PALETTE["Hair"]["id"]).all()

    def test_part_image_colours(self, bodypix, rgb_image):
        """Test part image uses palette colours and a white background."""
        result = bodypix.segment_with_parts(rgb_image)

        image = result["image"]
        assert image.shape == (4, 4, 4)
        assert image[0, 0].tolist() == [255, 255, 255, 255]
        assert image[0, 3].tolist() == BODYPIX_PALETTE["Hat"]["color"] + [255]
        assert image[3, 3].tolist() == BODYPIX_PALETTE["Hair"]["color"] + [255]

    def test_body_parts_returned(self, bodypix, rgb_image):
        """Test the palette used is returned with normalised colours."""
        result = bodypix.segment_with_parts(rgb_image)

        assert result["body_parts"]["Face"] == {"id": 11, "color": [217, 194, 49]}

    def test_custom_palette(self, bodypix, rgb_image):
        """Test a custom palette covering every part is used."""
        palette = {
            "Hat": {"id": 1, "color": "#ff0000"},
            "Hair": {"id": 2, "color": "rgb(0, 255, 0)"},
        }

        result = bodypix.segment_with_parts(rgb_image, {"palette": palette})

        assert result["image"][0, 3].tolist() == [255, 0, 0, 255]
        assert result["image"][3, 3].tolist() == [0, 255, 0, 255]
        assert result["body_parts"]["Hat"]["color"] == [255, 0, 0]

    def test_incomplete_palette_falls_back(self, bodypix):
        """Test a palette missing parts is ignored."""
        spec = bodypix.body_parts_spec({"Hat": {"id": 1, "color": [1, 2, 3]}})

        assert spec["Hat"]["color"] == BODYPIX_PALETTE["Hat"]["color"]
        assert len(spec) == len(BODYPIX_PALETTE)

    def test_incomplete_palette_not_stored(self, bodypix, rgb_image, caplog):
        """Test segmenting with a palette missing parts keeps the configured one."""
        incomplete = {"Hat": {"id": 1, "color": [1, 2, 3]}}

        with caplog.at_level("WARNING", logger="friendlyml.cv.body_pix"):
            result = bodypix.segment_with_parts(rgb_image, {"palette": incomplete})

        assert "falling back to the configured palette" in caplog.text
        assert bodypix.config["palette"] is BODYPIX_PALETTE
        assert result["image"][0, 3].tolist() == BODYPIX_PALETTE["Hat"]["color"] + [255]
        assert result["body_parts"]["Hair"]["color"] == BODYPIX_PALETTE["Hair"]["color"]

        # Next call without a palette is unaffected
        again = bodypix.segment_with_parts(rgb_image)
        assert again["image"][0, 3].tolist() == BODYPIX_PALETTE["Hat"]["color"] + [255]

    def test_complete_palette_persists(self, bodypix, rgb_image):
        """Test a palette covering every part is kept for later calls."""
        palette = {"Hat": {"id": 1, "color": [9, 9, 9]}, "Hair": {"id": 2, "color": [8, 8, 8]}}

        bodypix.segment_with_parts(rgb_image, {"palette": palette})
        result = bodypix.segment_with_parts(rgb_image)

        assert bodypix.config["palette"] is palette
        assert result["image"][3, 3].tolist() == [8, 8, 8, 255]
