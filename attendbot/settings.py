import os

from dotenv import load_dotenv

load_dotenv()  # loads variables from .env into the process environment


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    value = (os.getenv(name) or "").strip()
    try:
        return max(int(value), minimum) if value else default
    except ValueError:
        return default


# =========================
# CONFIG
# =========================
TOKEN = os.getenv("DISCORD_TOKEN")
DB_DIR = os.getenv("DB_DIR", "db")
DB_PATH = os.getenv("DB_PATH") or os.path.join(DB_DIR, "attendbot.db")
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
TZ_NAME = os.getenv("TZ_NAME", "UTC")
# checkpoint interval while an event is active
CHECKPOINT_MINUTES = _env_int("CHECKPOINT_MINUTES", 5)
# how often a guild whose recovery was deferred is retried
RECOVERY_RETRY_MINUTES = _env_int("RECOVERY_RETRY_MINUTES", 1)
# =========================
# ATTENDANCE DEFAULTS
# =========================
DEFAULT_MOVIE_THRESHOLD_MINUTES = 30
DEFAULT_GAME_PERCENTAGE = 50
DEFAULT_ATTENDANCE_MODE = "cumulative"
DEFAULT_BUMP_MINUTES = 60
MOVIE_THRESHOLD_RANGE = (1, 600)
GAME_PERCENTAGE_RANGE = (10, 90)
MAX_REASON_LENGTH = 512
ADD_MINUTES_RANGE = (1, 300)
CREDIT_MINUTES_RANGE = (1, 1440)
