from __future__ import annotations

import os
import sys
from pathlib import Path

# Add backend folder to sys.path so `import packverify...` works when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# The module-level engine needs a URL at import time; tests build their own engines
os.environ.setdefault("DB_DEV_FALLBACK_SQLITE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
