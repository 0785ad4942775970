"""API package.

This exposes router modules to simplify test imports like:
	from voucher_portal.api.routes.vendor import router
"""

__all__ = [
	"routes",
]
