#!/usr/bin/env python3
"""
Write the OpenAPI document of the PDF service to a file.

The schema is built from ``pdf_service.pdf_controller.app`` even when the
interactive docs are disabled, and includes the X-API-KEY security scheme.

Usage:
    python scripts/generate_openapi.py [--out docs/openapi.json]
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from pdf_service.pdf_controller import app

DEFAULT_OUT = Path(__file__).resolve().parents[1] / "docs" / "openapi.json"


def main() -> None:
    parser = argparse.ArgumentParser(description="Dump the PDF service OpenAPI schema as JSON")
    parser.add_argument("--out", type=Path, default=DEFAULT_OUT, help="Target file (default: docs/openapi.json)")
    args = parser.parse_args()

    out_path: Path = args.out
    out_path.parent.mkdir(parents=True, exist_ok=True)
    # sort_keys keeps diffs between releases small
    out_path.write_text(json.dumps(app.openapi(), ensure_ascii=False, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    print(f"OpenAPI schema written to {out_path}")


if __name__ == "__main__":
    main()
