import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]
DB_PATH = Path(os.getenv("DISPATCH_DB_PATH", str(BASE_DIR / "dispatch.db")))
LOG_LEVEL = os.getenv("DISPATCH_LOG_LEVEL", "INFO")
PDF_EXPORT_LIMIT = int(os.getenv("DISPATCH_PDF_EXPORT_LIMIT", "100"))
EVENT_POLL_SECONDS = float(os.getenv("DISPATCH_EVENT_POLL_SECONDS", "0.5"))
