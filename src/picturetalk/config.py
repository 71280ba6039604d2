"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))

# Remote analysis service
AI_PROVIDER: str = os.getenv("AI_PROVIDER", "kimi").lower()
KIMI_BASE_URL: str = os.getenv("KIMI_BASE_URL", "https://kimi.moonshot.cn").rstrip("/")
KIMI_API_KEY: str = os.getenv("KIMI_API_KEY", "")
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
HTTP_TIMEOUT_SECS: float = float(os.getenv("HTTP_TIMEOUT_SECS", "60"))

# Processing
MAX_CONCURRENT_TASKS: int = int(os.getenv("MAX_CONCURRENT_TASKS", "2"))
SAVE_DEBOUNCE_SECS: float = float(os.getenv("SAVE_DEBOUNCE_SECS", "0.5"))

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Derived paths
SQLITE_PATH: Path = DATA_DIR / "picturetalk.db"
IMAGES_DIR: Path = DATA_DIR / "images"
