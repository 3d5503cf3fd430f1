# config.py
import os
import logging
from dotenv import load_dotenv

# Load secrets before anything reads them
load_dotenv()


def _flag(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ==========================================
# ⚙️ CONFIGURATION
# ==========================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./medmind.db")

CRON_SECRET = os.getenv("CRON_SECRET")
LINE_CHANNEL_ACCESS_TOKEN = os.getenv("LINE_CHANNEL_ACCESS_TOKEN")
LINE_CHANNEL_SECRET = os.getenv("LINE_CHANNEL_SECRET")
LINE_TIMEOUT_SECONDS = float(os.getenv("LINE_TIMEOUT_SECONDS", "10"))

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "Asia/Bangkok")
CADENCE_MINUTES = int(os.getenv("CADENCE_MINUTES", "30"))
GRACE_MINUTES = int(os.getenv("GRACE_MINUTES", "60"))
MAX_RUN_SECONDS = int(os.getenv("MAX_RUN_SECONDS", "55"))
WINDOW_POLICY = os.getenv("WINDOW_POLICY", "grace")

# Ordered fields tried for a prescription's effective start date
START_DATE_FALLBACK = [
    f.strip() for f in os.getenv("START_DATE_FALLBACK", "start_date,issue_date,created_at").split(",") if f.strip()
]

ACK_PHRASE = os.getenv("ACK_PHRASE", "รับประทานยาแล้ว")
ACK_MATCH_THRESHOLD = int(os.getenv("ACK_MATCH_THRESHOLD", "90"))

VERBOSE_LOGGING = _flag("VERBOSE_LOGGING")

logging.basicConfig(
    level=logging.DEBUG if VERBOSE_LOGGING else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
