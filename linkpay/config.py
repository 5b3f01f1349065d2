import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def jwt_secret():
    return os.getenv("JWT_SECRET")


def gateway_url() -> str:
    return os.getenv("LINKPAY_GATEWAY_URL", "http://localhost:3001")


def gateway_api_key():
    return os.getenv("LINKPAY_GATEWAY_API_KEY")


def gateway_timeout() -> float:
    # Withdrawals routinely take tens of seconds (proof generation + relay)
    return float(os.getenv("LINKPAY_GATEWAY_TIMEOUT", "60"))


def base_fee() -> int:
    return int(os.getenv("LINKPAY_BASE_FEE", "6000000"))


def protocol_fee_rate() -> Decimal:
    return Decimal(os.getenv("LINKPAY_PROTOCOL_FEE_RATE", "0.0035"))


def share_url_base() -> str:
    return os.getenv("LINKPAY_SHARE_URL", "https://localhost:5173")


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()
