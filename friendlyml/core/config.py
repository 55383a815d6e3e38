"""
Application configuration management using Pydantic Settings.
"""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        protected_namespaces=(),
    )

    # Application
    APP_NAME: str = "friendlyml"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    API_V1_PREFIX: str = "/api/v1"

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Inference
    DEVICE: str = "cpu"  # cpu, cuda or mps

    # Object detection
    DETECTOR_MODEL: str = "yolov8n.pt"
    DETECTOR_CONF_THRESHOLD: float = 0.5
    DETECTOR_IOU_THRESHOLD: float = 0.45

    # Segmentation
    BODYPIX_MODEL: str = "mattmdjaga/segformer_b2_clothes"
    UNET_MODEL: str = "jonathandinu/face-parsing"
    SEGMENTATION_THRESHOLD: float = 0.5

    # Transfer learning
    FEATURE_EXTRACTOR_MODEL: str = "openai/clip-vit-base-patch32"

    # HTTP uploads and remote files
    MAX_IMAGE_SIZE_MB: int = 10
    REQUEST_TIMEOUT_SECONDS: int = 30

    # Models loaded at startup: "detector", "bodypix", "unet"
    PRELOAD_MODELS: List[str] = []


settings = Settings()
