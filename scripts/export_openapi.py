from __future__ import annotations

import json
from pathlib import Path
import sys

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from icu_handoff.main import app
API_DOCS_DIR = REPO_ROOT / "docs" / "api"


def main() -> None:
    API_DOCS_DIR.mkdir(parents=True, exist_ok=True)

    openapi_path = API_DOCS_DIR / "openapi.json"
    openapi_path.write_text(
        json.dumps(app.openapi(), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    print(f"[DOCS][openapi_export] path={openapi_path.relative_to(REPO_ROOT)}", flush=True)


if __name__ == "__main__":
    main()
