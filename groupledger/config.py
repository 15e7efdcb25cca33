import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Secret key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    # Session cookie is issued by the auth layer; the ledger only reads user_id from it
    SESSION_COOKIE_NAME = os.environ.get("SESSION_COOKIE_NAME", "groupledger_session")
    SESSION_COOKIE_HTTPONLY = _env_bool("SESSION_COOKIE_HTTPONLY", True)
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(",")
        if origin.strip()
    ]

    # Database config (defaults allow local run without crashing)
    DB_HOST = os.environ.get("DB_HOST", "localhost")
    DB_PORT = int(os.environ.get("DB_PORT", 3306))
    DB_USER = os.environ.get("DB_USER", "root")
    DB_PASSWORD = os.environ.get("DB_PASSWORD", "")
    DB_NAME = os.environ.get("DB_NAME", "groupledger")
    DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", 10))

    # Ledger
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD").upper()
    LEDGER_MAX_RETRIES = int(os.environ.get("LEDGER_MAX_RETRIES", 3))
    SYSTEM_TOKEN = os.environ.get("SYSTEM_TOKEN", "")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


config = Config()
