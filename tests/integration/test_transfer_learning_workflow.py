"""
End-to-End Tests for Transfer Learning

Tests the image → embedding → KNN cycle with the CLIP backbone replaced by
a stub that returns each image's mean colour:
1. Embed labelled images with FeatureExtractor.infer
2. Store the embeddings in a KNN classifier
3. Classify a new image (array or PNG bytes)
4. Save the classifier and reuse it with the same extractor

Run with: pytest tests/integration/test_transfer_learning_workflow.py -v
"""
import numpy as np
import pytest
import torch
from unittest.mock import MagicMock, Mock, patch

from friendlyml.cv.feature_extractor import feature_extractor
from friendlyml.knn import knn_classifier
from friendlyml.utils.image import encode_png

COLORS = {
    "tomato": (220, 40, 30),
    "sky": (40, 90, 220),
    "grass": (40, 200, 50),
}


def mean_colour_features(pixel_values):
    """Mean of the last axis triplets, one 3-value feature row per image."""
    return pixel_values.reshape(pixel_values.shape[0], -1, 3).float().mean(dim=1)


def stack_images(images, return_tensors="pt"):
    return {"pixel_values": torch.from_numpy(np.stack(images))}


@pytest.fixture
def extractor():
    """Feature extractor over the mean colour stub."""
    with patch("friendlyml.cv.feature_extractor.CLIPModel") as mock_model_cls, \
            patch("friendlyml.cv.feature_extractor.CLIPProcessor") as mock_processor_cls:
        model = MagicMock()
        model.get_image_features.side_effect = mean_colour_features
        mock_model_cls.from_pretrained.return_value.to.return_value = model
        mock_processor_cls.from_pretrained.return_value = Mock(side_effect=stack_images)
        yield feature_extractor("clip")


def photo(colour, rng, size=8):
    """Noisy image around a base colour."""
    noise = rng.integers(-20, 21, size=(size, size, 3))
    return np.clip(np.array(colour) + noise, 0, 255).astype(np.uint8)


@pytest.mark.integration
class TestTransferLearningWorkflow:
    """Test FeatureExtractor → KNNClassifier → classify."""

    def test_embeddings_feed_knn(self, extractor):
        """Test embeddings from infer are stored and classified by label."""
        rng = np.random.default_rng(0)
        knn = knn_classifier()

        for label, colour in COLORS.items():
            for _ in range(4):
                knn.add_example(extractor.infer(photo(colour, rng)), label)

        assert knn.dimension == extractor.embedding_dim == 3
        assert knn.get_count_by_label() == {"tomato": 4, "sky": 4, "grass": 4}

        result = knn.classify(extractor.infer(photo(COLORS["sky"], rng)), 3)
        assert result["label"] == "sky"
        assert result["confidences_by_label"]["sky"] == pytest.approx(1.0)

    def test_classifier_embeds_images_itself(self, extractor):
        """Test a classifier built over the extractor takes images and PNG bytes."""
        rng = np.random.default_rng(1)
        knn = knn_classifier(extractor)

        for label, colour in COLORS.items():
            for _ in range(3):
                knn.add_example(photo(colour, rng), label)

        assert knn.classify(photo(COLORS["grass"], rng))["label"] == "grass"
        assert knn.classify(encode_png(photo(COLORS["tomato"], rng)))["label"] == "tomato"

    def test_saved_classifier_reused_with_extractor(self, extractor, tmp_path):
        """Test a saved classifier loads into a new one over the same extractor."""
        rng = np.random.default_rng(2)
        knn = knn_classifier(extractor)
        for label, colour in COLORS.items():
            for _ in range(3):
                knn.add_example(photo(colour, rng), label)

        path = knn.save("colours", output_dir=tmp_path)
        loaded = knn_classifier(extractor).load(str(path))

        query = photo(COLORS["tomato"], rng)
        assert loaded.classify(query)["label"] == knn.classify(query)["label"] == "tomato"

    def test_pca_projected_embeddings(self, extractor):
        """Test KNN over embeddings after a PCA projection to two dimensions."""
        rng = np.random.default_rng(3)
        samples = [photo(colour, rng) for colour in COLORS.values() for _ in range(3)]
        extractor.initialize_projection_pca(samples, target_dim=2)

        knn = knn_classifier(extractor)
        for label, colour in COLORS.items():
            for _ in range(3):
                knn.add_example(photo(colour, rng), label)

        assert knn.dimension == 2
        assert knn.classify(photo(COLORS["sky"], rng))["label"] == "sky"
