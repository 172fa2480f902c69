from .auth import AccessToken, TokenProvider
from .client import RecordStoreClient
from .errors import AuthenticationError, RecordNotFoundError, RecordStoreError

__all__ = [
    "AccessToken",
    "AuthenticationError",
    "RecordNotFoundError",
    "RecordStoreClient",
    "RecordStoreError",
    "TokenProvider",
]
