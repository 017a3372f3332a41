"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in route modules
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. Storage is injected through RATE_LIMIT_STORAGE_URI: the default
memory:// suits a single process; point it at redis:// when several
instances must share counters. RATE_LIMIT_ENABLED=false turns every limit
off (the test suite does this).

Keys are the client address as seen through the proxy (first hop of
X-Forwarded-For), the same address the admin allow-list checks.
"""

from slowapi import Limiter

from core.config import get_settings
from core.http import get_client_ip

_settings = get_settings()

limiter = Limiter(
    key_func=get_client_ip,
    storage_uri=_settings.rate_limit_storage_uri,
    enabled=_settings.rate_limit_enabled,
)
