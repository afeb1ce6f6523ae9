"""API package.

This exposes router modules to simplify test imports like:
	from packverify.api.routes.quota import router
"""

__all__ = [
	"routes",
]
