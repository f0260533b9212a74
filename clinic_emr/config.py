from __future__ import annotations

import logging
import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# DB SQLite su file nella root del progetto, sovrascrivibile da env
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "clinic_emr.sqlite"
DATABASE_URL = os.getenv("CLINIC_DATABASE_URL", f"sqlite:///{DEFAULT_DB_PATH}")
SQL_ECHO = os.getenv("SQL_ECHO", "0") == "1"

# In produzione: mettila in variabile d'ambiente
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))

# Gateway chat-completions (compatibile OpenAI)
AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
AI_GATEWAY_API_KEY = os.getenv("AI_GATEWAY_API_KEY")
AI_MODEL = os.getenv("AI_MODEL", "google/gemini-2.5-flash")
AI_TIMEOUT_SECONDS = int(os.getenv("AI_TIMEOUT_SECONDS", "60"))

# Aliquote in percentuale
DEFAULT_TAX_RATE = Decimal(os.getenv("DEFAULT_TAX_RATE", "10"))
PACKAGE_TAX_RATE = Decimal(os.getenv("PACKAGE_TAX_RATE", "15"))
REGISTRATION_TAX_RATE = Decimal("0")

TICKET_TOKEN_PREFIX = os.getenv("TICKET_TOKEN_PREFIX", "Q")
DISPLAY_WAITING_LIMIT = 10
HISTORY_PAGE_SIZE = int(os.getenv("HISTORY_PAGE_SIZE", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str | None = None) -> None:
    """Formato unico per API e CLI."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
