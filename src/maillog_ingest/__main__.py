"""Module entrypoint.

Allows:
    python -m maillog_ingest
"""

from __future__ import annotations

from maillog_ingest.cli import main

if __name__ == "__main__":
    main()
