"""
Request rate limiting (slowapi). One in-memory limiter per process keyed by client IP;
sign-in initiation gets a tighter limit than the default.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

DEFAULT_LIMIT = "200/minute"
SIGNIN_LIMIT = "20/minute"

limiter = Limiter(key_func=get_remote_address, default_limits=[DEFAULT_LIMIT])
