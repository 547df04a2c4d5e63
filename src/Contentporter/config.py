"""Settings loader for Contentporter."""

from pathlib import Path
from typing import Any

import tomllib
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from config.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)
    store_cfg = t.get("store", {}) or {}
    export_cfg = t.get("export", {}) or {}
    import_cfg = t.get("import", {}) or {}
    out: dict[str, Any] = {
        "env": t.get("app", {}).get("env", "dev"),
        "database_url": store_cfg.get("database_url", "sqlite+aiosqlite:///./contentporter.sqlite3"),
        "schema_dir": store_cfg.get("schema_dir", "./schemas"),
        "uploads_dir": store_cfg.get("uploads_dir", "./public/uploads"),
        "export_dir": export_cfg.get("directory", "./export-data"),
        "populate_depth": int(export_cfg.get("populate_depth", 7)),
        "download_timeout_seconds": float(import_cfg.get("download_timeout_seconds", 60)),
        # Logging config
        "logging_level": t.get("logging", {}).get("level", "INFO"),
        # Per-handler levels: strings INFO|DEBUG|WARNING|ERROR|CRITICAL|NONE
        # console/to_file may also be bools: True->level, False->NONE
        "logging_console": None,
        "logging_file": None,
        "logging_file_path": t.get("logging", {}).get("file_path", "logs/contentporter.jsonl"),
        "logging_max_bytes": t.get("logging", {}).get("max_bytes", 5_000_000),
        "logging_backup_count": t.get("logging", {}).get("backup_count", 5),
    }

    log_cfg = t.get("logging", {}) or {}
    console_val = log_cfg.get("console", None)
    file_val = log_cfg.get("to_file", None)
    overall = out["logging_level"]

    def _norm_level(v, default):
        if isinstance(v, str):
            return v.upper()
        if isinstance(v, bool):
            return default if v else "NONE"
        return default

    out["logging_console"] = _norm_level(console_val, overall)
    out["logging_file"] = _norm_level(file_val, overall)
    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")

    # --- Content store ---
    database_url: str = Field(default="sqlite+aiosqlite:///./contentporter.sqlite3")
    schema_dir: str = Field(
        default="./schemas",
        description="Directory holding content-types/*.json and components/<category>/*.json.",
    )
    uploads_dir: str = Field(default="./public/uploads")

    # --- Export ---
    export_dir: str = "./export-data"
    populate_depth: int = Field(default=7, ge=1)

    # --- Import ---
    download_timeout_seconds: float = 60.0

    # --- Logging ---
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "NONE"
    logging_file_path: str = "logs/contentporter.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",  # Safely ignore any extra env vars
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd): developer-local overrides
        # 3) env_settings (OS env)
        # 4) TOML (config.toml): project defaults
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()
