# app/core/config.py
import os
from typing import List
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Caregiver Transfusion API")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "caregiver_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "caregiver")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # DATABASE_URL wins when set (sqlite:// in tests)
    SQLALCHEMY_DATABASE_URI: str = os.getenv("DATABASE_URL") or (
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}?charset=utf8mb4")

    AUTO_CREATE_TABLES: bool = _flag("AUTO_CREATE_TABLES")

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "2440"))

    # ---------- Transfusion monitoring ----------
    TRANSFUSION_ALERT_THRESHOLD_MINUTES: int = int(
        os.getenv("TRANSFUSION_ALERT_THRESHOLD_MINUTES", "15"))
    TRANSFUSION_RATE_TOLERANCE_PCT: float = float(
        os.getenv("TRANSFUSION_RATE_TOLERANCE_PCT", "20") or 20.0)
    TRANSFUSION_RATE_MIN_SAMPLE_MS: int = int(
        os.getenv("TRANSFUSION_RATE_MIN_SAMPLE_MS", "60000"))
    TRANSFUSION_HISTORY_LIMIT: int = int(
        os.getenv("TRANSFUSION_HISTORY_LIMIT", "50"))
    TRANSFUSION_HISTORY_MAX_LIMIT: int = int(
        os.getenv("TRANSFUSION_HISTORY_MAX_LIMIT", "200"))


settings = Settings()
