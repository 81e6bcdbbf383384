#  Chorus - Rate Limiter
#
#  Shared limiter instance used by app.py and route decorators.
#  Keyed by client address; session creation has its own tighter limit.
#
#  Depends on: config.py
#  Used by:    app.py, routes/sessions.py

from slowapi import Limiter
from slowapi.util import get_remote_address

from chorus.config import cfg

_rate_limit = cfg("server.rate_limit", "120/minute")
limiter = Limiter(key_func=get_remote_address, default_limits=[_rate_limit])
