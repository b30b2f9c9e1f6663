import os
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent


def _normalize_code(value: str, fallback: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        return fallback
    return normalized


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


HOME_CURRENCY = _normalize_code(os.getenv("DEFAULT_CURRENCY", "ILS"), "ILS")

FRANKFURTER_BASE_URL = os.getenv("FRANKFURTER_BASE_URL", "https://api.frankfurter.app")
FX_CACHE_TTL_SECONDS = _float_env("FX_CACHE_TTL_SECONDS", 30 * 60)
FX_REQUEST_TIMEOUT_SECONDS = _float_env("FX_REQUEST_TIMEOUT_SECONDS", 5)
FX_HISTORY_DAYS = int(_float_env("FX_HISTORY_DAYS", 90))
FX_FALLBACK_RATES_PATH = Path(
    os.getenv("FX_FALLBACK_RATES_PATH", str(PACKAGE_DIR / "fallback_rates.json"))
)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./household_forex.db")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE") or None
