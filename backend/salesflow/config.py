# backend/salesflow/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///salesflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Caller-side retry policy for CLI maintenance commands.
    # Services never retry on their own.
    CLI_RETRY_ATTEMPTS = int(os.environ.get("CLI_RETRY_ATTEMPTS", "3"))
    CLI_RETRY_BACKOFF = float(os.environ.get("CLI_RETRY_BACKOFF", "0.1"))

    # Roles (as forwarded by the auth proxy) allowed to force stage overrides
    PRIVILEGED_ROLES = {
        r.strip().lower()
        for r in os.environ.get("PRIVILEGED_ROLES", "admin,manager").split(",")
        if r.strip()
    }
