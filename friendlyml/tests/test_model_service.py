"""
Unit tests for shared model instances and startup preloading.
"""
import logging
import threading
import time
from unittest.mock import Mock, patch

import pytest

from friendlyml.core.config import settings
from friendlyml.core.startup import preload_models, run_startup_tasks
from friendlyml.services import model_service


@pytest.fixture(autouse=True)
def fresh_models():
    """Start and end every test without cached models."""
    model_service.reset_models()
    yield
    model_service.reset_models()


@pytest.mark.unit
class TestModelService:
    """Test lazy singletons."""

    def test_object_detector_created_once(self):
        """Test the detector is built on first use and then reused."""
        with patch("friendlyml.services.model_service.ObjectDetector") as mock_cls:
            first = model_service.get_object_detector()
            second = model_service.get_object_detector()

        assert first is second
        mock_cls.assert_called_once_with("cocossd")

    def test_body_pix_created_once(self):
        """Test BodyPix is shared."""
        with patch("friendlyml.services.model_service.BodyPix") as mock_cls:
            assert model_service.get_body_pix() is model_service.get_body_pix()

        mock_cls.assert_called_once_with()

    def test_unet_face_model(self):
        """Test the shared UNet uses the face model."""
        with patch("friendlyml.services.model_service.UNet") as mock_cls:
            model_service.get_unet()

        mock_cls.assert_called_once_with("face")

    def test_reset_models(self):
        """Test reset drops cached instances."""
        with patch("friendlyml.services.model_service.ObjectDetector") as mock_cls:
            mock_cls.side_effect = [Mock(), Mock()]
            first = model_service.get_object_detector()
            model_service.reset_models()
            second = model_service.get_object_detector()

        assert first is not second
        assert mock_cls.call_count == 2

    def test_concurrent_first_use_loads_once(self):
        """Test threads racing on first use share one detector."""
        start = threading.Barrier(8)
        seen = []

        def slow_load(*args):
            time.sleep(0.05)
            return Mock()

        def worker():
            start.wait()
            seen.append(model_service.get_object_detector())

        with patch("friendlyml.services.model_service.ObjectDetector", side_effect=slow_load) as mock_cls:
            threads = [threading.Thread(target=worker) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        assert mock_cls.call_count == 1
        assert len(seen) == 8
        assert all(instance is seen[0] for instance in seen)

    def test_loader_names(self):
        """Test the names accepted by PRELOAD_MODELS."""
        assert set(model_service.MODEL_LOADERS) == {"detector", "bodypix", "unet"}


@pytest.mark.unit
class TestStartup:
    """Test preloading at application startup."""

    def test_preload_configured_models(self):
        """Test configured models are loaded, case-insensitively."""
        detector_loader = Mock()
        unet_loader = Mock()

        with patch.dict("friendlyml.core.startup.MODEL_LOADERS", {"detector": detector_loader, "unet": unet_loader}, clear=True), \
                patch.object(settings, "PRELOAD_MODELS", ["Detector"]):
            preload_models()

        detector_loader.assert_called_once_with()
        unet_loader.assert_not_called()

    def test_unknown_model_skipped(self, caplog):
        """Test unknown names are logged and skipped."""
        with patch.object(settings, "PRELOAD_MODELS", ["tracker"]), \
                caplog.at_level(logging.WARNING, logger="friendlyml.core.startup"):
            preload_models()

        assert "Unknown model 'tracker'" in caplog.text

    def test_failed_preload_does_not_raise(self, caplog):
        """Test a model that fails to load does not stop startup."""
        failing = Mock(side_effect=RuntimeError("weights missing"))
        other = Mock()

        with patch.dict("friendlyml.core.startup.MODEL_LOADERS", {"bodypix": failing, "unet": other}, clear=True), \
                patch.object(settings, "PRELOAD_MODELS", ["bodypix", "unet"]), \
                caplog.at_level(logging.ERROR, logger="friendlyml.core.startup"):
            run_startup_tasks()

        other.assert_called_once_with()
        assert "Failed to preload bodypix: weights missing" in caplog.text

    def test_nothing_to_preload(self):
        """Test startup with an empty preload list loads nothing."""
        loader = Mock()

        with patch.dict("friendlyml.core.startup.MODEL_LOADERS", {"detector": loader}, clear=True), \
                patch.object(settings, "PRELOAD_MODELS", []):
            run_startup_tasks()

        loader.assert_not_called()
