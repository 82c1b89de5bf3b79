from .client import ChatRestClient

__all__ = ["ChatRestClient"]
