"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/auth.py (to
apply per-route limits with @limiter.limit()). A single shared instance keeps
every route on the same in-memory counter store.

Limits are callables, so each request reads the current settings value, e.g.
@limiter.limit(lambda: get_settings().login_rate_limit).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
