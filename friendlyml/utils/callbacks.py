"""
Dual calling convention helpers.

Every public model operation returns its result directly and, when a
callback is given, also reports to it node-style: ``callback(error, result)``.
"""
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[Optional[BaseException], Any], Any]


def call_callback(func: Callable[..., Any], callback: Optional[Callback] = None, *args, **kwargs) -> Any:
    """
    Run ``func`` and deliver its outcome to ``callback``.

    On success the callback receives ``(None, result)`` and the result is
    returned. On failure the callback receives ``(error, None)`` and the
    error propagates to the caller.
    """
    try:
        result = func(*args, **kwargs)
    except Exception as e:
        if callback is not None:
            logger.debug(f"Reporting {type(e).__name__} to callback")
            callback(e, None)
        raise

    if callback is not None:
        callback(None, result)
    return result


def is_callback(obj: Any) -> bool:
    """True for plain callables (functions, lambdas, bound methods)."""
    # Avoid treating array-likes with __call__ (e.g. mocks of images) as callbacks
    return callable(obj) and not hasattr(obj, "__array_interface__") and not isinstance(obj, type)
