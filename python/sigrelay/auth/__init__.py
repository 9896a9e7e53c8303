"""
Authentication module for sigrelay.

Provides the token store that gates connection admission.
"""

from .tokens import (
    TOKEN_LENGTH,
    TokenCapacityExceeded,
    TokenRecord,
    TokenStore,
    sanitize_id,
)

__all__ = [
    "TOKEN_LENGTH",
    "TokenCapacityExceeded",
    "TokenRecord",
    "TokenStore",
    "sanitize_id",
]
