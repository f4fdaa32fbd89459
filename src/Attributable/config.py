"""Settings loader for Attributable."""

import json
from pathlib import Path
from typing import Annotated, Any

import tomllib
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from config.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)
    attrs_cfg = t.get("attributes", {}) or {}
    import_cfg = t.get("import", {}) or {}
    out: dict[str, Any] = {
        "env": t.get("app", {}).get("env", "dev"),
        "features_activity_log": t.get("features", {}).get("activity_log", True),
        # Entity kinds that may carry attributes, e.g. ["product", "customer"]
        "entity_types": attrs_cfg.get("entities", []),
        "attribute_delete_cascade": attrs_cfg.get("delete_cascade", False),
        "import_delimiter": import_cfg.get("delimiter", ","),
        "import_encoding": import_cfg.get("encoding", "utf-8-sig"),
        "import_collection_separator": import_cfg.get("collection_separator", "|"),
        "import_natural_key": import_cfg.get("natural_key", "key"),
        "import_chunk_size": import_cfg.get("chunk_size", 500),
        "import_max_rows": import_cfg.get("max_rows", 50_000),
        "import_hoard_concurrency": import_cfg.get("hoard_concurrency", 1),
        "import_archive_success": import_cfg.get("archive_success", False),
        # Logging config
        "logging_enabled": t.get("logging", {}).get("enabled", True),
        "logging_level": t.get("logging", {}).get("level", "INFO"),
        "logging_console": None,
        "logging_file": None,
        "logging_file_path": t.get("logging", {}).get("file_path", "logs/attributable.jsonl"),
        "logging_max_bytes": t.get("logging", {}).get("max_bytes", 5_000_000),
        "logging_backup_count": t.get("logging", {}).get("backup_count", 5),
    }
    if "database_url" in (t.get("database", {}) or {}):
        out["database_url"] = t["database"]["database_url"]

    log_cfg = t.get("logging", {}) or {}
    # Per-handler levels: strings INFO|DEBUG|WARNING|ERROR|CRITICAL|NONE
    # Backward-compatible: if console/to_file are bools, map True->level, False->NONE
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

    if isinstance(console_val, bool):
        out["logging_to_console"] = console_val
    if isinstance(file_val, bool):
        out["logging_to_file"] = file_val

    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./attributable.sqlite3")

    # --- Attributes ---
    entity_types: Annotated[list[str], NoDecode] = Field(default_factory=list)
    features_activity_log: bool = True
    # Deleting a definition that still has values is rejected unless this is on
    attribute_delete_cascade: bool = False

    # --- Import pipeline ---
    import_delimiter: str = ","
    import_encoding: str = "utf-8-sig"
    import_collection_separator: str = "|"
    import_natural_key: str = "key"
    import_chunk_size: int = Field(default=500, ge=1)
    import_max_rows: int = Field(default=50_000, ge=1)
    import_hoard_concurrency: int = Field(default=1, ge=1)
    import_archive_success: bool = False

    # --- Logging ---
    logging_enabled: bool = True
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_to_console: bool = True
    logging_to_file: bool = True
    logging_file_path: str = "logs/attributable.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @field_validator("entity_types", mode="before")
    @classmethod
    def _split_entity_types(cls, v):
        # Allow ENTITY_TYPES=product,customer in addition to a JSON list
        if isinstance(v, str):
            if v.lstrip().startswith("["):
                return json.loads(v)
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("import_delimiter", "import_collection_separator")
    @classmethod
    def _single_char(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError("must be a single character")
        return v

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
        # 2) dotenv (.env in cwd), developer-local overrides
        # 3) env_settings (OS env)
        # 4) TOML (repo config.toml), project defaults
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
