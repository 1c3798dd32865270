"""Bootstrap for scripts launched as plain files (cron, container entrypoints)."""

from __future__ import annotations

import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent.parent


def add_root() -> Path:
    """Make the project importable and load ``.env`` before settings are read."""
    if str(ROOT) not in sys.path:
        sys.path.insert(0, str(ROOT))
    load_dotenv(ROOT / ".env", override=False)
    return ROOT
