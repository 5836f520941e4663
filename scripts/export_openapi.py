from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _render(data: object) -> str:
    # Keep ASCII-only output for repo diffs; non-ASCII will be \u-escaped.
    return json.dumps(data, ensure_ascii=True, indent=2, sort_keys=True) + "\n"


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Export the ingestion API OpenAPI spec to apidocs/ as a JSON snapshot."
    )
    parser.add_argument(
        "--out-dir",
        default="apidocs",
        help="Output directory (default: apidocs)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Do not write; exit 1 when the committed snapshot is stale.",
    )
    args = parser.parse_args()

    # Import the app lazily so argparse --help stays fast.
    from fieldsync.main import app

    path = Path(args.out_dir) / "openapi-v1.json"
    rendered = _render(app.openapi())

    if args.check:
        current = path.read_text(encoding="utf-8") if path.exists() else ""
        if current != rendered:
            print(f"{path} is out of date; run scripts/export_openapi.py", file=sys.stderr)
            return 1
        return 0

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(rendered, encoding="utf-8")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
