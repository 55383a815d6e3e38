"""
File and URL helpers used by save/load operations.
"""
import json
import logging
from pathlib import Path
from typing import Any, Union

import numpy as np
import requests
import torch

from friendlyml.core.config import settings

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def is_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def read_bytes(path_or_url: PathLike) -> bytes:
    """
    Read a local file or download a URL.

    Raises:
        ValueError: If the file does not exist
        requests.HTTPError: If the download fails
    """
    if is_url(path_or_url):
        logger.info(f"Downloading {path_or_url}")
        response = requests.get(path_or_url, timeout=settings.REQUEST_TIMEOUT_SECONDS)
        response.raise_for_status()
        return response.content

    path = Path(path_or_url)
    if not path.exists():
        raise ValueError(f"File not found: {path}")
    return path.read_bytes()


def read_text(path_or_url: PathLike) -> str:
    return read_bytes(path_or_url).decode("utf-8")


def load_json(path_or_url: PathLike) -> Any:
    return json.loads(read_text(path_or_url))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, torch.Tensor):
        return obj.detach().cpu().tolist()
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_json(obj: Any) -> str:
    return json.dumps(obj, default=_json_default)


def save_json(obj: Any, path: PathLike) -> Path:
    """Write ``obj`` as JSON, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_json(obj), encoding="utf-8")
    logger.info(f"Saved {path}")
    return path


def save_blob(data: bytes, path: PathLike) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logger.info(f"Saved {path} ({len(data)} bytes)")
    return path
