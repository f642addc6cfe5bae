# backend/stagetrack/config.py
from __future__ import annotations
import os


DEFAULT_PIPELINE_STAGES = (
    "MANUFACTURING",
    "TESTING",
    "SHIPPING",
    "AT_SEA",
    "SMT",
    "QC",
    "DELIVERED",
    "ONSITE",
    "COMPLETED",
    "FOLLOW_UP",
)


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stagetrack.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stagetrack.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    # Bearer tokens issued through `flask users issue-token`
    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "720"))

    CORS_ALLOWED_ORIGINS = _split_csv(
        os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        )
    )

    # Ordered production pipeline. Built once into a StagePipeline at startup.
    PIPELINE_STAGES = DEFAULT_PIPELINE_STAGES
