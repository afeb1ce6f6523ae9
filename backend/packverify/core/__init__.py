"""Configuration, database and observability infrastructure.

Exports configuration settings so tests can write
`from packverify.core import settings`.
"""

from .config import settings  # noqa: F401
