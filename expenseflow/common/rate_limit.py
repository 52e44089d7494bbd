"""Rate limiting (slowapi), keyed by client address.

Counters live in the store named by ``RATE_LIMIT_STORAGE_URI``; point it at
``redis://`` when several workers serve the API so they share one budget.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from expenseflow.config import settings

# Receipt uploads write to disk and hash the whole file
RECEIPT_UPLOAD_LIMIT = "20/minute"

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)
