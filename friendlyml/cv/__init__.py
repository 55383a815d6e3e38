"""
Computer Vision Models

Pretrained model wrappers with a simple calling convention:
- Object detection (YOLOv8 on COCO)
- Person and body part segmentation (BodyPix)
- Feature / background segmentation (UNet)
- Image embeddings for transfer learning (CLIP)
"""

from friendlyml.cv.object_detector import ObjectDetector, object_detector
from friendlyml.cv.body_pix import BodyPix, PartSegmentation, PersonSegmentation, body_pix
from friendlyml.cv.unet import UNet, unet
from friendlyml.cv.feature_extractor import FeatureExtractor, feature_extractor
from friendlyml.cv.segmentation_model import SemanticSegmentationModel

__all__ = [
    "ObjectDetector",
    "object_detector",
    "BodyPix",
    "PersonSegmentation",
    "PartSegmentation",
    "body_pix",
    "UNet",
    "unet",
    "FeatureExtractor",
    "feature_extractor",
    "SemanticSegmentationModel",
]
