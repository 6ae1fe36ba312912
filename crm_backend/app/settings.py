from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class BootstrapEmployee:
    email: str
    name: str
    status: str


def _parse_bootstrap_employees(raw: str) -> tuple[BootstrapEmployee, ...]:
    rows: list[BootstrapEmployee] = []
    for item in raw.split(","):
        parts = [part.strip() for part in item.split(":")]
        if not parts or not parts[0]:
            continue
        name = parts[1] if len(parts) > 1 and parts[1] else parts[0]
        status = parts[2] if len(parts) > 2 and parts[2] else "pending"
        rows.append(BootstrapEmployee(email=parts[0], name=name, status=status))
    return tuple(rows)


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    jwt_secret: str
    jwt_algorithm: str
    session_ttl_hours: int
    federated_token_secret: str
    federated_provider_name: str
    bootstrap_employees: tuple[BootstrapEmployee, ...]


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/coaching_crm.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        session_ttl_hours=max(1, min(168, _int_env("SESSION_TTL_HOURS", 12))),
        federated_token_secret=os.getenv(
            "FEDERATED_TOKEN_SECRET", "dev-only-federated-secret"
        ).strip(),
        federated_provider_name=os.getenv("FEDERATED_PROVIDER_NAME", "google.com").strip(),
        bootstrap_employees=_parse_bootstrap_employees(os.getenv("BOOTSTRAP_EMPLOYEES", "")),
    )
