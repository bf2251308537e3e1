"""
HTTP routes owned by the API service itself.
"""

from .cache_admin import create_cache_admin_router, require_user

__all__ = ["create_cache_admin_router", "require_user"]
