"""
NIMEX Marketplace — Rate Limiting
Per-IP limits via slowapi. Settlement calls are writes against money, so they
get a tighter tier than the global default; login gets the tightest.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from nimex.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["60/minute"],
    storage_uri="memory://",  # single process; point at Redis when scaled out
    enabled=get_settings().RATE_LIMIT_ENABLED,
)

RATE_LIMIT_AUTH = "10/minute"
RATE_LIMIT_WRITE = "30/minute"
