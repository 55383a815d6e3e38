"""
Application startup tasks.

Handles initialization tasks that should run when the application starts:
- Model preloading (settings.PRELOAD_MODELS)
"""
import logging

from friendlyml.core.config import settings
from friendlyml.services.model_service import MODEL_LOADERS

logger = logging.getLogger(__name__)


def preload_models() -> None:
    """
    Load the models named in settings.PRELOAD_MODELS.

    A model that fails to load is logged and skipped; it will be loaded
    again on first use.
    """
    for name in settings.PRELOAD_MODELS:
        loader = MODEL_LOADERS.get(name.lower())
        if loader is None:
            logger.warning(f"Unknown model '{name}' in PRELOAD_MODELS, expected one of {sorted(MODEL_LOADERS)}")
            continue

        try:
            logger.info(f"Preloading {name}...")
            loader()
            logger.info(f"✅ {name} loaded")
        except Exception as e:
            logger.error(f"❌ Failed to preload {name}: {e}")
            logger.warning(f"⚠️  Application starting without {name}, it will load on first request")


def run_startup_tasks() -> None:
    """
    Run all startup tasks.

    This function is called when the FastAPI application starts.
    """
    logger.info("=" * 60)
    logger.info("Running application startup tasks...")
    logger.info("=" * 60)

    preload_models()

    logger.info("=" * 60)
    logger.info("✅ Startup tasks completed")
    logger.info("=" * 60)
