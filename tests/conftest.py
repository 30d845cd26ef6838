from datetime import datetime, timedelta, timezone

import pytest

from attendbot import settings
from attendbot.db import init_db

EVENT_START = datetime(2024, 6, 1, 20, 0, tzinfo=timezone.utc)
GUILD = 111111111111111111
CHANNEL = 222222222222222222
MODERATOR = 999999999999999999


@pytest.fixture(autouse=True)
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "attendbot.db"
    monkeypatch.setattr(settings, "DB_PATH", str(path))
    init_db()
    return path


@pytest.fixture
def at():
    """Timestamp ``minutes`` after the event start."""
    def _at(minutes: float) -> datetime:
        return EVENT_START + timedelta(minutes=minutes)

    return _at
