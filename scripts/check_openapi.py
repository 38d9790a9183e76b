"""
Проверка, что закоммиченная OpenAPI-схема совпадает с текущими роутерами.
"""

from __future__ import annotations

import json

from export_openapi import OPENAPI_PATH

from apps.api_gateway.main import app
from counseling_engine.contracts.versions import HTTP_API_VERSION


def normalize(obj):
    """Сравнение без учёта порядка ключей."""
    return json.loads(json.dumps(obj, sort_keys=True, ensure_ascii=False))


def main() -> int:
    if not OPENAPI_PATH.exists():
        print(f"ERROR: {OPENAPI_PATH} not found. Run: python scripts/export_openapi.py")
        return 1

    expected = json.loads(OPENAPI_PATH.read_text(encoding="utf-8"))
    current = app.openapi()
    current.setdefault("info", {})["x-http-api-version"] = HTTP_API_VERSION

    changed = sorted(set(current.get("paths", {})) ^ set(expected.get("paths", {})))
    if normalize(current) != normalize(expected):
        print("ERROR: OpenAPI schema mismatch (current != committed).")
        if changed:
            print("Paths added/removed:", ", ".join(changed))
        print("Hint: run `python scripts/export_openapi.py` and commit docs/openapi.json.")
        return 1

    print("OK: OpenAPI schema matches")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
