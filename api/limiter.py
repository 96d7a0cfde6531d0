"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
that apply per-IP limits with @limiter.limit(): the OAuth /start hand-off in
api/routes/v1/auth.py and the back-office login in api/routes/v1/admin.py.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

The limits themselves are callables reading Settings, so they can be raised
through the environment (tests do this before the app is imported).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
