"""
Image Feature Extraction for Transfer Learning

Turns images into compact embedding vectors with CLIP. Embeddings feed
the KNN classifier (or any other small model) so new categories can be
learned from a handful of examples.

- CLIP image tower as backbone
- Optional linear projection to fewer dimensions (pretrained weights or PCA)
- L2-normalised output, so dot product == cosine similarity
- Little-endian float32 binary form for storing embeddings
"""
import logging
from typing import List, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
from sklearn.decomposition import PCA
from transformers import CLIPModel, CLIPProcessor

from friendlyml.core.config import settings
from friendlyml.core.device import resolve_device
from friendlyml.utils.callbacks import Callback, call_callback
from friendlyml.utils.image import to_rgb_array

logger = logging.getLogger(__name__)

MODEL_ALIASES = {
    "clip": settings.FEATURE_EXTRACTOR_MODEL,
}

# Serialised embeddings are float32, little-endian
EMBEDDING_DTYPE = np.dtype("<f4")

# Size of the square image used to read the backbone's output width
_SIZING_RESOLUTION = 224


class FeatureExtractor:
    """
    Image embeddings from a CLIP backbone.

    ``clip_dim`` is the backbone's feature size; ``embedding_dim`` is the
    size returned by :meth:`infer`, smaller when a projection is set.
    """

    def __init__(
        self,
        model_name: str = "clip",
        projection_weights_path: Optional[str] = None,
        embedding_dim: Optional[int] = None,
        device: Optional[str] = None
    ):
        """
        Args:
            model_name: "clip" or a HuggingFace CLIP checkpoint name
            projection_weights_path: state dict of an ``nn.Linear(clip_dim, embedding_dim)``
            embedding_dim: Projected size; required with projection_weights_path
            device: "cuda", "mps", "cpu" or None for settings.DEVICE
        """
        if projection_weights_path and embedding_dim is None:
            raise ValueError("embedding_dim must be specified when using projection_weights_path")

        self.model_name = MODEL_ALIASES.get(model_name.lower(), model_name)
        self.device = resolve_device(device or settings.DEVICE)

        logger.info(f"Loading feature extractor {self.model_name} on {self.device}")
        self.model = CLIPModel.from_pretrained(self.model_name).to(self.device)
        self.processor = CLIPProcessor.from_pretrained(self.model_name)
        self.model.eval()

        self.clip_dim = self._backbone_width()
        self.embedding_dim = self.clip_dim
        self.projection: Optional[nn.Linear] = None
        self.use_projection = False

        if projection_weights_path:
            projection = nn.Linear(self.clip_dim, embedding_dim)
            projection.load_state_dict(torch.load(projection_weights_path, map_location=self.device))
            self._set_projection(projection)
            logger.info(f"Projection {self.clip_dim} -> {embedding_dim} loaded from {projection_weights_path}")

        self.ready = True

    def _backbone_width(self) -> int:
        # Output width varies by checkpoint; one blank forward pass reads it
        blank = torch.zeros(1, 3, _SIZING_RESOLUTION, _SIZING_RESOLUTION, device=self.device)
        with torch.no_grad():
            width = int(self.model.get_image_features(pixel_values=blank).shape[-1])
        logger.info(f"Backbone features: {width}D")
        return width

    def _set_projection(self, projection: nn.Linear) -> None:
        self.projection = projection.to(self.device)
        self.embedding_dim = projection.out_features
        self.use_projection = True

    def _backbone_features(self, frames: Sequence[np.ndarray]) -> torch.Tensor:
        batch = self.processor(images=list(frames), return_tensors="pt")
        with torch.no_grad():
            return self.model.get_image_features(**{name: tensor.to(self.device) for name, tensor in batch.items()})

    def initialize_projection_pca(self, sample_images: List, target_dim: int = 128) -> float:
        """
        Fit a projection to ``target_dim`` dimensions with PCA over sample images.

        Replaces any projection already set. Needs at least ``target_dim``
        images, ideally from the domain the embeddings will be used on.

        Returns:
            Fraction of variance explained by the projection
        """
        if len(sample_images) < target_dim:
            raise ValueError(
                f"PCA to {target_dim}D needs at least {target_dim} sample images, got {len(sample_images)}"
            )
        if self.use_projection:
            logger.warning("Replacing the existing projection with a PCA fit")

        features = torch.cat(
            [self._backbone_features([to_rgb_array(image)]) for image in sample_images]
        ).cpu().numpy()
        pca = PCA(n_components=target_dim).fit(features)

        # x -> components @ (x - mean) as a single affine layer
        weight = torch.as_tensor(pca.components_, dtype=torch.float32)
        projection = nn.Linear(self.clip_dim, target_dim)
        with torch.no_grad():
            projection.weight.copy_(weight)
            projection.bias.copy_(-(weight @ torch.as_tensor(pca.mean_, dtype=torch.float32)))
        self._set_projection(projection)

        explained = float(pca.explained_variance_ratio_.sum())
        logger.info(f"PCA projection {self.clip_dim} -> {target_dim} from {len(sample_images)} images "
                    f"keeps {explained:.1%} of the variance")
        return explained

    def _to_embeddings(self, features: torch.Tensor) -> np.ndarray:
        with torch.no_grad():
            if self.use_projection:
                features = self.projection(features)
            features = features / features.norm(dim=-1, keepdim=True)
        return features.cpu().numpy()

    def infer(self, image, callback: Optional[Callback] = None) -> np.ndarray:
        """
        Extract the embedding of one image.

        Args:
            image: Any input accepted by :func:`to_rgb_array`
            callback: Callback receiving (error, embedding)

        Returns:
            L2-normalised embedding vector (embedding_dim,)

        Raises:
            ValueError: If the image is invalid or extraction fails
        """
        return call_callback(self._infer_internal, callback, image)

    def _infer_internal(self, image) -> np.ndarray:
        frame = to_rgb_array(image)
        try:
            embedding = self._to_embeddings(self._backbone_features([frame]))[0]
        except RuntimeError as e:
            logger.error(f"Feature extraction failed: {e}")
            raise ValueError(f"Failed to extract embedding: {e}") from e

        if not self._is_usable(embedding):
            raise ValueError("Extracted embedding contains invalid values (NaN, inf or all zeros)")
        return embedding

    def infer_batch(self, images: List, callback: Optional[Callback] = None) -> np.ndarray:
        """Embeddings of several images, one row each (N, embedding_dim)."""
        return call_callback(self._infer_batch_internal, callback, images)

    def _infer_batch_internal(self, images: List) -> np.ndarray:
        if images is None or len(images) == 0:
            raise ValueError("Invalid images: empty or None")

        frames = [to_rgb_array(image) for image in images]
        try:
            embeddings = self._to_embeddings(self._backbone_features(frames))
        except RuntimeError as e:
            logger.error(f"Feature extraction failed for a batch of {len(frames)}: {e}")
            raise ValueError(f"Failed to extract batch embeddings: {e}") from e

        unusable = [index for index, row in enumerate(embeddings) if not self._is_usable(row)]
        if unusable:
            logger.warning(f"Unusable embeddings at batch positions {unusable}")
        return embeddings

    @staticmethod
    def _is_usable(embedding: np.ndarray) -> bool:
        return bool(np.isfinite(embedding).all()) and not np.allclose(embedding, 0)

    @staticmethod
    def cosine_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """Cosine similarity of two L2-normalised embeddings, in [-1, 1]."""
        return float(np.dot(emb1, emb2))

    @staticmethod
    def serialize_embedding(embedding: np.ndarray) -> bytes:
        """Pack an embedding as float32 binary (dim * 4 bytes)."""
        return np.asarray(embedding, dtype=EMBEDDING_DTYPE).ravel().tobytes()

    @staticmethod
    def deserialize_embedding(binary: bytes, expected_dim: Optional[int] = None) -> np.ndarray:
        """Unpack a float32 binary embedding."""
        if len(binary) % EMBEDDING_DTYPE.itemsize:
            raise ValueError(f"Binary length {len(binary)} is not a multiple of {EMBEDDING_DTYPE.itemsize}")

        embedding = np.frombuffer(binary, dtype=EMBEDDING_DTYPE).astype(np.float32)
        if expected_dim is not None and embedding.size != expected_dim:
            raise ValueError(f"Expected {expected_dim}D embedding, got {embedding.size}D from binary")
        return embedding


def feature_extractor(
    model_name: str = "clip",
    projection_weights_path: Optional[str] = None,
    embedding_dim: Optional[int] = None,
    callback: Optional[Callback] = None,
) -> FeatureExtractor:
    """
    Factory function to create a feature extractor.

    The callback, when given, receives (error, extractor) after loading.
    """
    return call_callback(FeatureExtractor, callback, model_name, projection_weights_path, embedding_dim)
