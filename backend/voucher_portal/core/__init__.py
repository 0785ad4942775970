"""Core infrastructure: configuration, database, security, observability
and background tasks.

Exports configuration settings to simplify import paths inside tests
(e.g. `from voucher_portal.core import settings`).
"""

from .config import settings  # noqa: F401
