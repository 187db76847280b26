"""Rate limiting for the read-only API."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from livesync.config import get_settings

settings = get_settings()

# Rate limiter using client IP
limiter = Limiter(key_func=get_remote_address)

READ_RATE_LIMIT = settings.READ_RATE_LIMIT
