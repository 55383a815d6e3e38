"""
friendlyml: pretrained machine learning models with a friendly calling convention.

Every model operation returns its result and, when given a callback,
also calls ``callback(error, result)``.
"""
__version__ = "0.1.0"

from friendlyml.cv.body_pix import body_pix
from friendlyml.cv.feature_extractor import feature_extractor
from friendlyml.cv.object_detector import object_detector
from friendlyml.cv.unet import unet
from friendlyml.knn.knn_classifier import knn_classifier
from friendlyml.neural_network.diy_neural_network import neural_network

__all__ = [
    "__version__",
    "body_pix",
    "feature_extractor",
    "object_detector",
    "unet",
    "knn_classifier",
    "neural_network",
]
