"""
Unit tests for shared helpers.

Tests:
- Callback calling convention
- Image input normalisation and PNG encoding
- Colour parsing and palette generation
- File / URL reading and JSON saving
"""
import json

import cv2
import numpy as np
import pytest
import torch
from unittest.mock import Mock, patch

from friendlyml.cv.palette import BODYPIX_PALETTE, build_palette, color_to_rgb
from friendlyml.utils.callbacks import call_callback, is_callback
from friendlyml.utils.image import (
    decode_image,
    encode_png,
    is_image_like,
    mask_to_rgba,
    open_video,
    to_rgb_array,
)
from friendlyml.utils import io


@pytest.mark.unit
class TestCallbacks:
    """Test (error, result) callback delivery."""

    def test_success_returns_and_reports(self):
        """Test result is returned and passed to the callback."""
        callback = Mock()

        result = call_callback(lambda a, b: a + b, callback, 2, 3)

        assert result == 5
        callback.assert_called_once_with(None, 5)

    def test_failure_reports_and_raises(self):
        """Test errors reach the callback and still propagate."""
        callback = Mock()

        def fail():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            call_callback(fail, callback)

        error, result = callback.call_args[0]
        assert isinstance(error, ValueError)
        assert result is None

    def test_without_callback(self):
        """Test plain call when no callback is given."""
        assert call_callback(lambda: "ok") == "ok"

    def test_is_callback(self):
        """Test which objects count as callbacks."""
        assert is_callback(lambda err, res: None)
        assert is_callback(print)
        assert not is_callback(np.zeros(3))
        assert not is_callback(dict)
        assert not is_callback({"a": 1})
        assert not is_callback(None)


@pytest.mark.unit
class TestImageInputs:
    """Test conversion of the supported image inputs."""

    def test_rgb_array_passthrough(self, rgb_image):
        """Test RGB uint8 arrays are returned unchanged."""
        np.testing.assert_array_equal(to_rgb_array(rgb_image), rgb_image)

    def test_grayscale_expanded(self):
        """Test 2-D arrays become 3 channels."""
        result = to_rgb_array(np.full((2, 3), 7, dtype=np.uint8))

        assert result.shape == (2, 3, 3)
        assert (result == 7).all()

    def test_rgba_dropped_alpha(self):
        """Test the alpha channel is discarded."""
        result = to_rgb_array(np.zeros((2, 2, 4), dtype=np.uint8))

        assert result.shape == (2, 2, 3)

    def test_normalised_floats_scaled(self):
        """Test float images in [0, 1] are scaled to 0-255."""
        result = to_rgb_array(np.full((1, 1, 3), 0.5, dtype=np.float32))

        assert result.dtype == np.uint8
        assert result[0, 0].tolist() == [128, 128, 128]

    def test_chw_tensor(self):
        """Test CHW tensors are transposed to HWC."""
        image = np.arange(5 * 6 * 3, dtype=np.uint8).reshape(5, 6, 3)
        tensor = torch.from_numpy(image).permute(2, 0, 1)

        np.testing.assert_array_equal(to_rgb_array(tensor), image)

    def test_png_bytes(self, png_bytes, rgb_image):
        """Test encoded bytes decode to the original RGB pixels."""
        np.testing.assert_array_equal(to_rgb_array(png_bytes), rgb_image)

    def test_image_file(self, tmp_path, rgb_image):
        """Test reading an image file from disk as RGB."""
        path = tmp_path / "image.png"
        cv2.imwrite(str(path), cv2.cvtColor(rgb_image, cv2.COLOR_RGB2BGR))

        np.testing.assert_array_equal(to_rgb_array(path), rgb_image)

    def test_missing_file(self, tmp_path):
        """Test error for a path that does not exist."""
        with pytest.raises(ValueError, match="Image file not found"):
            to_rgb_array(tmp_path / "missing.png")

    def test_invalid_inputs(self):
        """Test error for None, empty and badly shaped arrays."""
        with pytest.raises(ValueError, match="empty or None"):
            to_rgb_array(None)
        with pytest.raises(ValueError, match="empty array"):
            to_rgb_array(np.array([]))
        with pytest.raises(ValueError, match="Invalid image shape"):
            to_rgb_array(np.zeros((2, 2, 5)))
        with pytest.raises(ValueError, match="Unsupported image input"):
            to_rgb_array(42)

    def test_undecodable_bytes(self):
        """Test error for bytes that are not an image."""
        with pytest.raises(ValueError, match="Could not decode"):
            decode_image(b"not an image")

    def test_is_image_like(self, rgb_image):
        """Test image-like detection."""
        assert is_image_like(rgb_image)
        assert is_image_like(b"\x89PNG")
        assert is_image_like("photo.jpg")
        assert not is_image_like({"threshold": 0.5})
        assert not is_image_like(None)
        assert not is_image_like(True)

    def test_video_capture_frame(self, rgb_image):
        """Test frames from a capture are converted BGR -> RGB."""
        capture = Mock(spec=cv2.VideoCapture)
        capture.read.return_value = (True, rgb_image[:, :, ::-1].copy())

        np.testing.assert_array_equal(to_rgb_array(capture), rgb_image)

    def test_video_capture_exhausted(self):
        """Test error when a capture has no more frames."""
        capture = Mock(spec=cv2.VideoCapture)
        capture.read.return_value = (False, None)

        with pytest.raises(ValueError, match="Could not read a frame"):
            to_rgb_array(capture)

    def test_open_video_failure(self, tmp_path):
        """Test error when a capture cannot be opened."""
        with pytest.raises(ValueError, match="Could not open video source"):
            open_video(tmp_path / "missing.mp4")


@pytest.mark.unit
class TestImageOutputs:
    """Test PNG encoding and mask painting."""

    def test_encode_rgba_png(self):
        """Test RGBA images keep their alpha channel through PNG."""
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[0, 0] = [10, 20, 30, 255]

        decoded = cv2.imdecode(np.frombuffer(encode_png(rgba), np.uint8), cv2.IMREAD_UNCHANGED)

        assert decoded.shape == (2, 2, 4)
        # OpenCV decodes as BGRA
        assert decoded[0, 0].tolist() == [30, 20, 10, 255]

    def test_mask_to_rgba(self):
        """Test foreground and background colours."""
        mask = np.array([[True, False]])

        rgba = mask_to_rgba(mask, foreground=(255, 0, 0, 255))

        assert rgba[0, 0].tolist() == [255, 0, 0, 255]
        assert rgba[0, 1].tolist() == [0, 0, 0, 0]


@pytest.mark.unit
class TestPalette:
    """Test colour parsing and palette generation."""

    @pytest.mark.parametrize(
        "color,expected",
        [
            ("#ff8000", [255, 128, 0]),
            ("#f80", [255, 136, 0]),
            ("rgb(1, 2, 3)", [1, 2, 3]),
            ("rgba(1, 2, 3, 0.5)", [1, 2, 3]),
            ((4, 5, 6), [4, 5, 6]),
            (np.array([7, 8, 9, 255]), [7, 8, 9]),
        ],
    )
    def test_color_to_rgb(self, color, expected):
        """Test supported colour notations."""
        assert color_to_rgb(color) == expected

    @pytest.mark.parametrize("color", ["red", "#12", "#gggggg", "rgb(1, 2)", [1, 2]])
    def test_invalid_colors(self, color):
        """Test error for unparseable colours."""
        with pytest.raises(ValueError):
            color_to_rgb(color)

    def test_build_palette(self):
        """Test known labels keep their colour and background is skipped."""
        palette = build_palette({0: "Background", 2: "Hair", 5: "Tail"})

        assert "Background" not in palette
        assert palette["Hair"] == {"id": 2, "color": BODYPIX_PALETTE["Hair"]["color"]}
        assert palette["Tail"]["id"] == 5
        assert len(palette["Tail"]["color"]) == 3

    def test_build_palette_deterministic(self):
        """Test generated colours are stable across calls."""
        first = build_palette({0: "background", 1: "Tail"}, "background")
        second = build_palette({0: "background", 1: "Tail"}, "background")

        assert first == second


@pytest.mark.unit
class TestIO:
    """Test local and remote file helpers."""

    def test_is_url(self):
        """Test URL detection."""
        assert io.is_url("https://example.com/data.json")
        assert io.is_url("http://localhost/model.json")
        assert not io.is_url("data/model.json")

    def test_save_and_load_json(self, tmp_path):
        """Test JSON saved to disk loads back."""
        path = io.save_json({"a": [1, 2]}, tmp_path / "out.json")

        assert json.loads(path.read_text()) == {"a": [1, 2]}
        assert io.load_json(path) == {"a": [1, 2]}

    def test_read_missing_file(self, tmp_path):
        """Test error for a missing local file."""
        with pytest.raises(ValueError, match="not found"):
            io.read_bytes(tmp_path / "missing.bin")

    def test_read_url(self):
        """Test remote files are fetched over HTTP."""
        with patch("friendlyml.utils.io.requests.get") as mock_get:
            mock_get.return_value.content = b'{"ok": true}'

            data = io.load_json("https://example.com/data.json")

        assert data == {"ok": True}
        mock_get.return_value.raise_for_status.assert_called_once()
