"""
ASGI entrypoint for deployments.

The FastAPI app lives in `backend/directrent/main.py`; when the project is not
pip-installed, `backend/` must be on `sys.path` for `import directrent` to resolve.

  uvicorn main:app --host 0.0.0.0 --port $PORT
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path


_ROOT = Path(__file__).resolve().parent
_BACKEND_DIR = _ROOT / "backend"

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

logging.basicConfig(
    level=(os.environ.get("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

from directrent.main import app  # noqa: E402,F401
