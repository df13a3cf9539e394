import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .utils import bool_env, qualify_table

DEFAULT_CONFIG_PATH = "./config/config.yaml"
MAX_BATCH_SIZE = 10000


@dataclass(frozen=True)
class SchemaSettings:
    """Table and column names of the intake tables."""
    tokens_table: str = "public.public_forms_tokens"
    token_column: str = "token"
    token_entity_column: str = "entity_id"
    token_product_column: str = "product_id"
    token_created_column: str = "created_at"
    completion_column: str = "completed_at"
    # "timestamp": NULL means not completed; "boolean": anything but TRUE means not completed
    completion_kind: str = "timestamp"

    entities_table: str = "public.entity"
    entity_id_column: str = "id"

    relationships_table: str = "public.relationship"
    relationship_id_column: str = "id"
    relationship_product_column: str = "product_id"
    relationship_entity_column: str = "entity_id"
    relationship_status_column: str = "status"
    new_status: str = "new"

    corpus_table: str = "public.new_corpus"
    corpus_entity_column: str = "entity_id"

    jobs_table: str = "public.job_schedule_queue"
    job_id_column: str = "id"
    job_status_column: str = "status"


@dataclass(frozen=True)
class CleanupSettings:
    db_uri: str
    retention_days: int = 7
    batch_size: int = 500
    max_attempts: int = 3
    retry_delay: float = 1.0
    statement_timeout: int = 30
    max_batches: Optional[int] = None
    dry_run: bool = False
    archive: bool = False
    archive_path: str = "./archive"
    log_file: str = "./form_cleaner.log"
    log_rotate: Optional[Dict[str, Any]] = None
    log_console: bool = True
    schema: SchemaSettings = field(default_factory=SchemaSettings)


def load_config(path: str) -> dict:
    """
    Load the YAML configuration file and apply environment overrides.

    Supported environment variables:
    - DATABASE_CONNECTION_STRING or DB_URI: Database connection string
    - EXPIRY_DAYS: Retention window in days
    - BATCH_SIZE: Candidate tokens per page
    - MAX_ATTEMPTS: Attempts per page before the run aborts
    - DRY_RUN: Whether to roll back every page instead of committing (true/false)
    - ARCHIVE: Whether to archive deleted rows to CSV
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")

    db_uri = os.getenv("DATABASE_CONNECTION_STRING") or os.getenv("DB_URI")
    if db_uri:
        config["db_uri"] = db_uri
        logging.info("[CONFIG] Using database connection info from environment variables")

    for env_name, key in (("EXPIRY_DAYS", "retention_days"),
                          ("BATCH_SIZE", "batch_size"),
                          ("MAX_ATTEMPTS", "max_attempts")):
        raw = os.getenv(env_name)
        if raw is not None:
            config[key] = raw
            logging.info(f"[CONFIG] Using environment variable to set {key} = {raw}")

    for env_name, key in (("DRY_RUN", "dry_run"), ("ARCHIVE", "archive")):
        flag = bool_env(env_name)
        if flag is not None:
            config[key] = flag
            logging.info(f"[CONFIG] Using environment variable to set {key} = {flag}")

    return config


def _int(cfg: dict, key: str, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    raw = cfg.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e
    if value < minimum or (maximum is not None and value > maximum):
        bound = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ConfigError(f"{key} must be {bound}, got {value}")
    return value


def _schema(raw: Optional[dict]) -> SchemaSettings:
    if raw is None:
        return SchemaSettings()
    if not isinstance(raw, dict):
        raise ConfigError("schema must be a mapping of table/column names")
    known = set(SchemaSettings.__dataclass_fields__)
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown schema keys: {', '.join(sorted(unknown))}")
    values = {k: str(v) for k, v in raw.items()}
    for key in ("tokens_table", "entities_table", "relationships_table", "corpus_table", "jobs_table"):
        if key in values:
            values[key] = qualify_table(values[key])
    schema = SchemaSettings(**values)
    if schema.completion_kind not in ("timestamp", "boolean"):
        raise ConfigError(f"schema.completion_kind must be 'timestamp' or 'boolean', got {schema.completion_kind!r}")
    return schema


def load_settings(cfg: dict) -> CleanupSettings:
    """Validate a loaded config mapping. Any problem is a fatal setup error."""
    db_uri = cfg.get("db_uri")
    if not db_uri:
        raise ConfigError("db_uri is required (or set DATABASE_CONNECTION_STRING / DB_URI)")

    max_batches = cfg.get("max_batches")
    if max_batches is not None:
        max_batches = _int(cfg, "max_batches", 0, 1)

    try:
        retry_delay = float(cfg.get("retry_delay", 1.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"retry_delay must be a number, got {cfg.get('retry_delay')!r}") from e
    if retry_delay < 0:
        raise ConfigError("retry_delay must be >= 0")

    log_rotate = cfg.get("log_rotate")
    if log_rotate is not None and not isinstance(log_rotate, dict):
        raise ConfigError("log_rotate must be a mapping")

    return CleanupSettings(
        db_uri=str(db_uri),
        retention_days=_int(cfg, "retention_days", 7, 1),
        batch_size=_int(cfg, "batch_size", 500, 1, MAX_BATCH_SIZE),
        max_attempts=_int(cfg, "max_attempts", 3, 1),
        retry_delay=retry_delay,
        statement_timeout=_int(cfg, "statement_timeout", 30, 0),
        max_batches=max_batches,
        dry_run=bool(cfg.get("dry_run", False)),
        archive=bool(cfg.get("archive", False)),
        archive_path=str(cfg.get("archive_path") or "./archive"),
        log_file=str(cfg.get("log_file") or "./form_cleaner.log"),
        log_rotate=log_rotate,
        log_console=bool(cfg.get("log_console", True)),
        schema=_schema(cfg.get("schema")),
    )
