from friendlyml.services.model_service import (
    MODEL_LOADERS,
    get_body_pix,
    get_object_detector,
    get_unet,
)

__all__ = ["MODEL_LOADERS", "get_object_detector", "get_body_pix", "get_unet"]
