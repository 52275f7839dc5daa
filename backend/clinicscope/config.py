# backend/clinicscope/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/clinicscope.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///clinicscope.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Endpoints that never hold an access scope (health checks, login, static assets).
    # Views can also opt out individually with @public_endpoint.
    TENANCY_PUBLIC_ENDPOINTS = {"static", "system.health", "auth.login"}

    # Status returned when scope resolution is denied. Missing credentials are always 401.
    TENANCY_DENIAL_STATUS = int(os.environ.get("TENANCY_DENIAL_STATUS", "403"))
