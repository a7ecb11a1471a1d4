"""CLI helper for importing a rankings spreadsheet into a round.

Uses the same Supabase configuration as the API; without it the local JSON
store under ``backend/data`` is updated instead.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List

from ranking_core import DataStore, PersistenceError, RankingImporter


def _format_preview(headers: List[str], rows: List[dict]) -> str:
    lines = [" | ".join(headers)]
    for row in rows:
        lines.append(" | ".join(str(row.get(header, "-")) for header in headers))
    return "\n".join(lines)


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("path", type=Path, help="Spreadsheet (.xlsx or .csv) to import")
    parser.add_argument("--round", dest="round_id", help="Target round id")
    parser.add_argument("--preview", action="store_true", help="Only show the first rows, do not import")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        content = args.path.read_bytes()
    except OSError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    importer = RankingImporter(DataStore())
    try:
        if args.preview:
            preview = importer.preview(content, args.path.name)
            print(_format_preview(preview.headers, preview.rows))
            print(f"\n{preview.total_rows} data rows")
            return 0
        result = importer.import_rankings(content, args.round_id, args.path.name)
    except PersistenceError as exc:
        print(f"ERROR ({exc.stage}): {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(f"Imported {result.imported} rankings into round {result.round_id}")
    print(f"Columns: {', '.join(result.columns)}")
    for new_id, original in result.renamed.items():
        print(f"  - duplicate '{original}' stored as '{new_id}'")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
