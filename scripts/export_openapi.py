"""
Экспорт OpenAPI-схемы API Gateway в docs/openapi.json.
Файл сверяется в CI скриптом check_openapi.py.
"""

from __future__ import annotations

import json
from pathlib import Path

from apps.api_gateway.main import app
from counseling_engine.contracts.versions import HTTP_API_VERSION

OPENAPI_PATH = Path("docs/openapi.json")


def main() -> int:
    OPENAPI_PATH.parent.mkdir(parents=True, exist_ok=True)

    schema = app.openapi()
    schema.setdefault("info", {})["x-http-api-version"] = HTTP_API_VERSION
    OPENAPI_PATH.write_text(
        json.dumps(schema, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
    )
    print(f"Wrote {OPENAPI_PATH} (api {HTTP_API_VERSION})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
