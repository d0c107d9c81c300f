"""Command-line interface for migrating a local dataset into the document store."""
from __future__ import annotations

from services.migration import main


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
