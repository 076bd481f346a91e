"""Log line parsers.

Only the postfix syslog dialect is recognized.
"""

from __future__ import annotations

from .base import LineParser
from .postfix import PostfixLogParser

__all__ = [
    "LineParser",
    "PostfixLogParser",
]
