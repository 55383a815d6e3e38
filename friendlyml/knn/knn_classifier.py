"""
K-nearest neighbours classifier for transfer learning.

Stores labelled example vectors (usually embeddings from the feature
extractor) and classifies new vectors by majority vote among the k most
similar stored examples (cosine similarity). Given a feature extractor,
images can be passed wherever a vector is expected.
"""
import logging
from numbers import Integral
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import torch
from sklearn.neighbors import KNeighborsClassifier

from friendlyml.utils import io
from friendlyml.utils.callbacks import Callback, call_callback, is_callback
from friendlyml.utils.image import is_image_like

logger = logging.getLogger(__name__)

DEFAULT_K = 3
DEFAULT_FILE_NAME = "myKNN.json"

ClassKey = Union[int, str]


def _to_vector(example: Any) -> np.ndarray:
    if isinstance(example, torch.Tensor):
        example = example.detach().cpu().numpy()
    vector = np.asarray(example, dtype=np.float32).ravel()
    if vector.size == 0:
        raise ValueError("Example is empty")
    return vector


def _l2_normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    return np.divide(vectors, norms, out=np.zeros_like(vectors), where=norms > 0)


class KNNClassifier:
    """
    KNN classifier over example vectors.

    Class indices are ints; string labels are mapped to indices in the
    order they are first seen (``map_string_to_index``).

    With a ``feature_extractor`` (anything with ``infer(image)``), image
    inputs are embedded before they are stored or classified. Flat lists
    and 1-D arrays are always taken as ready-made vectors.
    """

    def __init__(self, feature_extractor=None):
        self.feature_extractor = feature_extractor
        self.map_string_to_index: List[Optional[str]] = []
        self._dataset: Dict[int, np.ndarray] = {}

    def _example_vector(self, example: Any) -> np.ndarray:
        if self.feature_extractor is not None and is_image_like(example) and getattr(example, "ndim", None) != 1:
            example = self.feature_extractor.infer(example)
        return _l2_normalize(_to_vector(example))

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    def _index_for(self, class_index_or_label: ClassKey, create: bool = False) -> Optional[int]:
        if isinstance(class_index_or_label, str):
            if class_index_or_label in self.map_string_to_index:
                return self.map_string_to_index.index(class_index_or_label)
            if not create:
                return None
            self.map_string_to_index.append(class_index_or_label)
            return len(self.map_string_to_index) - 1

        if isinstance(class_index_or_label, Integral) and not isinstance(class_index_or_label, bool):
            return int(class_index_or_label)

        raise ValueError(
            f"Class must be a string label or an integer index, got {type(class_index_or_label).__name__}"
        )

    def _label_for(self, class_index: int) -> Optional[str]:
        if 0 <= class_index < len(self.map_string_to_index):
            return self.map_string_to_index[class_index]
        return None

    @property
    def dimension(self) -> Optional[int]:
        for examples in self._dataset.values():
            return examples.shape[1]
        return None

    # ------------------------------------------------------------------
    # Examples
    # ------------------------------------------------------------------

    def add_example(self, example: Any, class_index_or_label: ClassKey) -> int:
        """
        Add a labelled example.

        Args:
            example: List, numpy array or tensor (flattened), or an image
                when a feature extractor is set
            class_index_or_label: String label or integer class index

        Returns:
            Class index the example was stored under

        Raises:
            ValueError: If the example size differs from stored examples
        """
        vector = self._example_vector(example)
        class_index = self._index_for(class_index_or_label, create=True)

        dimension = self.dimension
        if dimension is not None and vector.shape[0] != dimension:
            raise ValueError(f"Example has {vector.shape[0]} values, expected {dimension}")

        if class_index in self._dataset:
            self._dataset[class_index] = np.vstack([self._dataset[class_index], vector])
        else:
            self._dataset[class_index] = vector[np.newaxis, :]

        return class_index

    def classify(self, example: Any, k_or_callback: Union[int, Callback, None] = DEFAULT_K, callback: Optional[Callback] = None) -> Dict[str, Any]:
        """
        Classify an example by voting among its k nearest stored examples.

        Args:
            example: List, numpy array, tensor or (with a feature extractor) image
            k_or_callback: Number of neighbours (default 3) or callback
            callback: Callback receiving (error, result)

        Returns:
            {
                "class_index": 1,
                "label": "cat",
                "confidences": {0: 0.33, 1: 0.67},
                "confidences_by_label": {"dog": 0.33, "cat": 0.67}  # string labels only
            }

        Raises:
            RuntimeError: If there are no examples
            ValueError: If the example size differs from stored examples
        """
        k = DEFAULT_K
        if is_callback(k_or_callback):
            callback = k_or_callback
        elif k_or_callback is not None:
            k = int(k_or_callback)

        return call_callback(self._classify_internal, callback, example, k)

    def _classify_internal(self, example: Any, k: int) -> Dict[str, Any]:
        if self.get_num_labels() <= 0:
            raise RuntimeError("There is no example in any class")
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")

        vector = self._example_vector(example)
        if vector.shape[0] != self.dimension:
            raise ValueError(f"Example has {vector.shape[0]} values, expected {self.dimension}")

        class_indices = sorted(self._dataset)
        examples = np.vstack([self._dataset[i] for i in class_indices])
        targets = np.concatenate([np.full(len(self._dataset[i]), i) for i in class_indices])

        clf = KNeighborsClassifier(
            n_neighbors=min(k, len(examples)),
            metric="cosine",
            algorithm="brute",
        )
        clf.fit(examples, targets)
        votes = clf.predict_proba(vector[np.newaxis, :])[0]

        confidences = {int(class_index): float(vote) for class_index, vote in zip(clf.classes_, votes)}
        # classes_ is sorted, so argmax picks the lowest index on ties
        class_index = int(clf.classes_[int(np.argmax(votes))])

        label = self._label_for(class_index)
        result: Dict[str, Any] = {
            "class_index": class_index,
            "label": label if label is not None else str(class_index),
            "confidences": confidences,
        }

        if self.map_string_to_index:
            result["confidences_by_label"] = {
                (self._label_for(index) or str(index)): confidence
                for index, confidence in confidences.items()
            }

        return result

    def clear_label(self, class_index_or_label: ClassKey) -> None:
        """
        Remove every example of a class.

        Raises:
            ValueError: If the class has no examples
        """
        class_index = self._index_for(class_index_or_label)
        if class_index is None or class_index not in self._dataset:
            raise ValueError(f"Cannot clear invalid class {class_index_or_label}")
        del self._dataset[class_index]

    def clear_all_labels(self) -> None:
        self.map_string_to_index = []
        self._dataset = {}

    def get_count(self) -> Dict[int, int]:
        """Example count per class index."""
        return {class_index: len(examples) for class_index, examples in sorted(self._dataset.items())}

    def get_count_by_label(self) -> Dict[ClassKey, int]:
        """Example count per label (per class index when no string labels are used)."""
        counts = self.get_count()
        if not self.map_string_to_index:
            return counts
        return {
            self._label_for(class_index): count
            for class_index, count in counts.items()
            if self._label_for(class_index) is not None
        }

    def get_num_labels(self) -> int:
        return len(self._dataset)

    def get_classifier_dataset(self) -> Dict[int, np.ndarray]:
        """Stored examples per class index, shape (count, dimension)."""
        return {class_index: examples.copy() for class_index, examples in self._dataset.items()}

    def set_classifier_dataset(self, dataset: Dict[ClassKey, Any]) -> None:
        """
        Replace stored examples.

        Args:
            dataset: Class index -> array-like of shape (count, dimension).
                None entries are skipped.
        """
        restored: Dict[int, np.ndarray] = {}
        dimension = None
        for key, examples in dataset.items():
            if examples is None:
                continue
            if isinstance(examples, torch.Tensor):
                examples = examples.detach().cpu().numpy()
            matrix = np.asarray(examples, dtype=np.float32)
            matrix = matrix.reshape(len(matrix), -1) if matrix.ndim != 1 else matrix[np.newaxis, :]

            if dimension is not None and matrix.shape[1] != dimension:
                raise ValueError(f"Class {key} has {matrix.shape[1]} values per example, expected {dimension}")
            dimension = matrix.shape[1]
            restored[int(key)] = _l2_normalize(matrix)

        self._dataset = restored

    def dispose(self) -> None:
        self.clear_all_labels()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, name: Optional[str] = None, output_dir: Union[str, Path] = ".") -> Path:
        """
        Save examples and labels to JSON.

        File layout: ``{"dataset": {index: {"label"?, "shape", "dtype"}},
        "tensors": [flat values per class, in dataset order]}``

        Returns:
            Path of the written file
        """
        file_name = DEFAULT_FILE_NAME
        if name:
            file_name = name if name.endswith(".json") else f"{name}.json"

        dataset: Dict[str, Dict[str, Any]] = {}
        tensors: List[List[float]] = []
        for class_index, examples in sorted(self._dataset.items()):
            entry: Dict[str, Any] = {"shape": list(examples.shape), "dtype": "float32"}
            label = self._label_for(class_index)
            if label is not None:
                entry["label"] = label
            dataset[str(class_index)] = entry
            tensors.append(examples.ravel().tolist())

        return io.save_json({"dataset": dataset, "tensors": tensors}, Path(output_dir) / file_name)

    def load(self, path_or_url: Union[str, Path, Dict[str, Any]], callback: Optional[Callback] = None) -> "KNNClassifier":
        """
        Load examples and labels saved by :meth:`save`.

        Args:
            path_or_url: File path, URL or the already parsed JSON dict
            callback: Callback receiving (error, self)
        """
        return call_callback(self._load_internal, callback, path_or_url)

    def _load_internal(self, path_or_url) -> "KNNClassifier":
        data = path_or_url if isinstance(path_or_url, dict) else io.load_json(path_or_url)

        try:
            dataset = data["dataset"]
            tensors = data["tensors"]
        except (KeyError, TypeError) as e:
            raise ValueError("KNN file must contain 'dataset' and 'tensors'") from e

        if len(dataset) != len(tensors):
            raise ValueError(f"KNN file has {len(dataset)} classes but {len(tensors)} tensors")

        restored = {}
        labels: Dict[int, str] = {}
        for (key, entry), values in zip(dataset.items(), tensors):
            if values is None:
                continue
            class_index = int(key)
            shape = entry.get("shape")
            array = np.asarray(values, dtype=entry.get("dtype", "float32"))
            restored[class_index] = array.reshape(shape) if shape else array
            if entry.get("label") is not None:
                labels[class_index] = entry["label"]

        self.set_classifier_dataset(restored)
        if labels:
            self.map_string_to_index = [labels.get(i) for i in range(max(labels) + 1)]
        else:
            self.map_string_to_index = []

        logger.info(f"Loaded KNN dataset with {self.get_num_labels()} classes")
        return self


def knn_classifier(feature_extractor=None) -> KNNClassifier:
    """Factory function to create an empty KNN classifier, optionally over a feature extractor."""
    return KNNClassifier(feature_extractor)
