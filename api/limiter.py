"""
api/limiter.py -- The one slowapi Limiter shared by every router.

api/main.py mounts it (app.state.limiter + SlowAPIMiddleware) and
api/routes/v1/auth.py decorates the login and challenge routes with
@limiter.limit(LOGIN_RATE_LIMIT). Counters are in-memory and keyed by client
address, so limits are per process.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", headers_enabled=False)
