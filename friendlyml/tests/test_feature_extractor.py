"""
Unit tests for the CLIP feature extractor.

Tests embedding extraction including:
- Model loading and feature dimension detection
- Single and batch embeddings (L2 normalised)
- PCA projection
- Error handling
- Binary serialisation
"""
import numpy as np
import pytest
import torch
from unittest.mock import MagicMock, Mock, patch

from friendlyml.core.config import settings
from friendlyml.cv.feature_extractor import FeatureExtractor, feature_extractor

FEATURE_DIM = 8


def fake_image_features(pixel_values):
    """First FEATURE_DIM pixel values (+1) of every image as its features."""
    flat = pixel_values.reshape(pixel_values.shape[0], -1).float()
    return flat[:, :FEATURE_DIM] + 1.0


def fake_processor(images, return_tensors="pt"):
    return {"pixel_values": torch.from_numpy(np.stack(images))}


@pytest.fixture
def mock_clip():
    """Mock CLIP model and processor."""
    with patch("friendlyml.cv.feature_extractor.CLIPModel") as mock_model_cls, \
            patch("friendlyml.cv.feature_extractor.CLIPProcessor") as mock_processor_cls:
        model = MagicMock()
        model.get_image_features.side_effect = fake_image_features
        mock_model_cls.from_pretrained.return_value.to.return_value = model
        mock_processor_cls.from_pretrained.return_value = Mock(side_effect=fake_processor)
        yield mock_model_cls, model


@pytest.fixture
def extractor(mock_clip):
    """Feature extractor with the mocked CLIP backend."""
    return FeatureExtractor("clip")


@pytest.fixture
def sample_images():
    """Distinct random images."""
    rng = np.random.default_rng(0)
    return [rng.integers(0, 256, size=(4, 4, 3), dtype=np.uint8) for _ in range(6)]


@pytest.mark.unit
class TestLoading:
    """Test model loading."""

    def test_clip_alias(self, mock_clip, extractor):
        """Test the clip alias loads the configured checkpoint."""
        mock_model_cls, model = mock_clip
        mock_model_cls.from_pretrained.assert_called_once_with(settings.FEATURE_EXTRACTOR_MODEL)
        model.eval.assert_called_once()

    def test_feature_dimension_detected(self, extractor):
        """Test the embedding size comes from the model output."""
        assert extractor.clip_dim == FEATURE_DIM
        assert extractor.embedding_dim == FEATURE_DIM
        assert extractor.use_projection is False

    def test_projection_requires_dim(self, mock_clip, tmp_path):
        """Test error when projection weights are given without a size."""
        with pytest.raises(ValueError, match="embedding_dim must be specified"):
            FeatureExtractor(projection_weights_path=str(tmp_path / "proj.pt"))

    def test_projection_weights_loaded(self, mock_clip, tmp_path):
        """Test pretrained projection weights are applied."""
        path = tmp_path / "proj.pt"
        torch.save(torch.nn.Linear(FEATURE_DIM, 3).state_dict(), path)

        instance = FeatureExtractor(projection_weights_path=str(path), embedding_dim=3)

        assert instance.use_projection is True
        assert instance.embedding_dim == 3

    def test_factory_callback(self, mock_clip):
        """Test factory reports the loaded extractor."""
        callback = Mock()

        instance = feature_extractor("clip", callback=callback)

        callback.assert_called_once_with(None, instance)
        assert instance.ready is True


@pytest.mark.unit
class TestInfer:
    """Test embedding extraction."""

    def test_infer_normalised(self, extractor, rgb_image):
        """Test a single embedding has unit length."""
        embedding = extractor.infer(rgb_image)

        assert embedding.shape == (FEATURE_DIM,)
        assert np.linalg.norm(embedding) == pytest.approx(1.0, abs=1e-5)

    def test_infer_direction(self, extractor, rgb_image):
        """Test the embedding is the normalised model feature."""
        embedding = extractor.infer(rgb_image)

        expected = np.arange(1, FEATURE_DIM + 1, dtype=np.float32)
        expected /= np.linalg.norm(expected)
        np.testing.assert_allclose(embedding, expected, atol=1e-5)

    def test_infer_callback(self, extractor, rgb_image):
        """Test callback receives the embedding."""
        callback = Mock()

        embedding = extractor.infer(rgb_image, callback)

        assert callback.call_args[0][0] is None
        np.testing.assert_array_equal(callback.call_args[0][1], embedding)

    def test_infer_batch(self, extractor, sample_images):
        """Test batch embeddings, one row per image."""
        embeddings = extractor.infer_batch(sample_images)

        assert embeddings.shape == (len(sample_images), FEATURE_DIM)
        np.testing.assert_allclose(np.linalg.norm(embeddings, axis=1), 1.0, atol=1e-5)

    def test_infer_batch_empty(self, extractor):
        """Test error for an empty batch."""
        with pytest.raises(ValueError, match="empty or None"):
            extractor.infer_batch([])

    def test_invalid_image(self, extractor):
        """Test error for None input."""
        with pytest.raises(ValueError, match="Invalid image"):
            extractor.infer(None)

    def test_model_failure(self, mock_clip, extractor, rgb_image):
        """Test runtime errors are converted to ValueError."""
        _, model = mock_clip
        model.get_image_features.side_effect = RuntimeError("CUDA out of memory")

        with pytest.raises(ValueError, match="Failed to extract embedding"):
            extractor.infer(rgb_image)

    def test_zero_features_rejected(self, mock_clip, extractor, rgb_image):
        """Test all-zero features are reported as invalid."""
        _, model = mock_clip
        model.get_image_features.side_effect = lambda **kwargs: torch.zeros(1, FEATURE_DIM)

        with pytest.raises(ValueError, match="invalid values"):
            extractor.infer(rgb_image)


@pytest.mark.unit
class TestPCAProjection:
    """Test PCA projection initialisation."""

    def test_pca_projection(self, extractor, sample_images, rgb_image):
        """Test embeddings shrink to the PCA size."""
        explained = extractor.initialize_projection_pca(sample_images, target_dim=3)

        assert 0.0 < explained <= 1.0 + 1e-6
        assert extractor.use_projection is True

        embedding = extractor.infer(rgb_image)
        assert embedding.shape == (3,)
        assert np.linalg.norm(embedding) == pytest.approx(1.0, abs=1e-5)

    def test_pca_needs_enough_samples(self, extractor, sample_images):
        """Test error when there are fewer samples than dimensions."""
        with pytest.raises(ValueError, match="at least 10 sample images"):
            extractor.initialize_projection_pca(sample_images, target_dim=10)


@pytest.mark.unit
class TestSerialization:
    """Test embedding helpers."""

    def test_serialize_roundtrip(self):
        """Test float32 binary packing."""
        embedding = np.array([0.5, -0.25, 1.0], dtype=np.float32)

        binary = FeatureExtractor.serialize_embedding(embedding)

        assert len(binary) == 12
        np.testing.assert_array_equal(FeatureExtractor.deserialize_embedding(binary, expected_dim=3), embedding)

    def test_deserialize_bad_length(self):
        """Test error for truncated binaries."""
        with pytest.raises(ValueError, match="not a multiple of 4"):
            FeatureExtractor.deserialize_embedding(b"\x00" * 5)

    def test_deserialize_wrong_dim(self):
        """Test error when the size does not match."""
        with pytest.raises(ValueError, match="Expected 4D"):
            FeatureExtractor.deserialize_embedding(b"\x00" * 12, expected_dim=4)

    def test_cosine_similarity(self):
        """Test similarity of unit vectors."""
        a = np.array([1.0, 0.0])
        b = np.array([0.0, 1.0])

        assert FeatureExtractor.cosine_similarity(a, a) == pytest.approx(1.0)
        assert FeatureExtractor.cosine_similarity(a, b) == pytest.approx(0.0)
