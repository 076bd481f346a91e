"""Parser interface."""

from __future__ import annotations

from typing import Protocol

from ..models import ParsedLine


class LineParser(Protocol):
    """Parser interface: return ParsedLine if the line is of interest, else None."""

    def parse(self, line: str) -> ParsedLine | None:
        """Classify a single log line."""
        ...
