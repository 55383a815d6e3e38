from friendlyml.knn.knn_classifier import KNNClassifier, knn_classifier

__all__ = ["KNNClassifier", "knn_classifier"]
