from friendlyml.api.v1 import api_router

__all__ = ["api_router"]
