"""Command-line report that evaluates the analytics cards of a workspace snapshot."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from workspace_analytics.cards import AnalyticsCard
from workspace_analytics.fields import Field
from workspace_analytics.orchestrator import CardOrchestrator
from workspace_analytics.records import RecordRow
from workspace_analytics.settings import AnalyticsSettings, get_settings, resolve_log_level
from workspace_analytics.stores import (
    MemoryCardStore,
    MemoryFieldStore,
    MemoryMetadataStore,
    MemoryRecordStore,
)

LOGGER = logging.getLogger(__name__)


class SnapshotError(ValueError):
    """Raised when a workspace snapshot cannot be read."""


def load_snapshot(path: Path) -> Dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise SnapshotError(f"Unable to read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SnapshotError(f"{path} must contain a JSON object")
    return payload


def build_stores(snapshot: Mapping[str, Any]):
    """Load a snapshot into in-memory stores: ``(cards, records, fields, metadata)``."""
    try:
        cards = [AnalyticsCard.from_dict(entry) for entry in snapshot.get("cards") or []]
        fields = [Field.from_dict(entry) for entry in snapshot.get("fields") or []]
        rows = {
            str(table_id): [RecordRow.from_dict(entry) for entry in entries or []]
            for table_id, entries in (snapshot.get("rows") or {}).items()
        }
        metadata = MemoryMetadataStore(snapshot.get("bases") or [], snapshot.get("tables") or [])
    except (TypeError, ValueError, AttributeError) as exc:
        raise SnapshotError(f"Invalid snapshot: {exc}") from exc
    return MemoryCardStore(cards), MemoryRecordStore(rows), MemoryFieldStore(fields), metadata


def _log_level(value: str) -> str:
    level = resolve_log_level(value)
    if level is None:
        raise argparse.ArgumentTypeError(f"unknown log level '{value}'")
    return level


def resolve_workspace(snapshot: Mapping[str, Any], requested: Optional[str]) -> Optional[str]:
    if requested:
        return requested
    if snapshot.get("workspace_id"):
        return str(snapshot["workspace_id"])
    for entry in snapshot.get("cards") or []:
        if isinstance(entry, Mapping) and entry.get("workspace_id"):
            return str(entry["workspace_id"])
    return None


async def render_report(
    snapshot: Mapping[str, Any],
    workspace_id: str,
    *,
    detail: bool = False,
    settings: Optional[AnalyticsSettings] = None,
) -> List[Dict[str, Any]]:
    card_store, record_store, field_store, metadata_store = build_stores(snapshot)
    orchestrator = CardOrchestrator(
        workspace_id,
        card_store,
        record_store,
        field_store,
        metadata_store,
        settings=settings,
    )
    try:
        cards = await orchestrator.load_cards()
        if detail:
            return [orchestrator.card_detail(card.id) for card in cards]
        return [orchestrator.card_view(card.id) for card in cards]
    finally:
        await orchestrator.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``analytics_report.py``."""

    parser = argparse.ArgumentParser(
        description="Evaluate the analytics cards of a workspace snapshot."
    )
    parser.add_argument("snapshot", type=Path, help="JSON file with fields, rows and cards")
    parser.add_argument("--workspace", help="Workspace id (default: taken from the snapshot)")
    parser.add_argument(
        "--detail",
        action="store_true",
        help="Print the expanded detail panel of every card instead of the tile view",
    )
    parser.add_argument("--log-level", type=_log_level, help="Override ANALYTICS_LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=args.log_level or settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        snapshot = load_snapshot(args.snapshot)
        workspace_id = resolve_workspace(snapshot, args.workspace)
        if workspace_id is None:
            raise SnapshotError("No workspace id given and none found in the snapshot")
        report = asyncio.run(
            render_report(snapshot, workspace_id, detail=args.detail, settings=settings)
        )
    except SnapshotError as exc:
        print(f"Report failed: {exc}")
        return 1

    LOGGER.info("Rendered %s analytics cards for workspace %s", len(report), workspace_id)
    print(json.dumps(report, indent=2, default=str))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
