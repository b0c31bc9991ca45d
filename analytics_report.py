"""Command-line interface for rendering a workspace analytics report."""
from __future__ import annotations

from workspace_analytics.cli import main


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
