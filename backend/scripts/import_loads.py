#!/usr/bin/env python3
"""Bulk import loads from a CSV or JSON export into the LoadVoice store."""

from __future__ import annotations

import argparse
import csv
import json
from pathlib import Path
import sys
from typing import Any, Dict, Iterable, List

# Ensure `app` package is importable when script is run directly.
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pydantic import ValidationError

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.models.loads import LoadCreateRequest
from app.services.load_engine import TransitionRejected, load_engine


CARRIER_COLUMNS = {"carrier_name", "mc_number", "dot_number", "dispatch_email"}


def read_rows(path: Path) -> List[Dict[str, Any]]:
    if path.suffix.lower() == ".json":
        data = json.loads(path.read_text())
        return data if isinstance(data, list) else data.get("loads", [])
    with path.open(newline="") as handle:
        return list(csv.DictReader(handle))


def to_request(row: Dict[str, Any]) -> LoadCreateRequest:
    """Flat CSV columns become a carrier block; blank cells are dropped."""
    values = {key: value for key, value in row.items() if value not in (None, "")}
    carrier = {key: values.pop(key) for key in list(values) if key in CARRIER_COLUMNS}
    if carrier and "carrier" not in values:
        carrier["carrier_id"] = values.get("carrier_id")
        values["carrier"] = carrier
    values.setdefault("source", "import")
    return LoadCreateRequest(**values)


def iter_requests(rows: Iterable[Dict[str, Any]], limit: int) -> Iterable[tuple[int, Dict[str, Any]]]:
    for index, row in enumerate(rows, start=1):
        if limit > 0 and index > limit:
            break
        yield index, row


def run(path: Path, limit: int, organization_id: str, actor: str) -> None:
    total = 0
    succeeded = 0

    for index, row in iter_requests(read_rows(path), limit):
        total += 1
        try:
            created = load_engine.create_load(to_request(row), organization_id, actor=actor)
        except TransitionRejected as exc:
            print(f"[ERROR] row {index}: {exc}: {', '.join(exc.result.missing_fields)}")
            continue
        except (ValidationError, ValueError) as exc:
            print(f"[ERROR] row {index}: {exc}")
            continue
        succeeded += 1
        print(f"[OK] {created['load_id']} status={created['status']} ref={created.get('reference_number') or '-'}")

    print(
        f"\nImport complete: {succeeded}/{total} successful | "
        f"organization={organization_id} loads={len(load_engine.list_loads(organization_id))}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Bulk import freight loads")
    parser.add_argument(
        "file",
        type=Path,
        help="CSV or JSON file of loads (one row/object per load)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=0,
        help="Optional max number of loads to import (0 = all)",
    )
    parser.add_argument(
        "--organization-id",
        type=str,
        default=get_settings().default_organization_id,
        help="Organization that owns the imported loads",
    )
    parser.add_argument(
        "--actor",
        type=str,
        default="import",
        help="Actor recorded on each load's history entry",
    )
    args = parser.parse_args()

    path = args.file.expanduser().resolve()
    if not path.is_file():
        raise SystemExit(f"File not found: {path}")

    configure_logging(get_settings().log_level)
    run(
        path=path,
        limit=max(0, args.limit),
        organization_id=args.organization_id.strip() or "demo",
        actor=args.actor.strip() or "import",
    )


if __name__ == "__main__":
    main()
