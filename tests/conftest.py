import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    """File-backed SQLite URL for the async key-value store."""

    return f"sqlite+aiosqlite:///{tmp_path / 'kv.sqlite'}"
