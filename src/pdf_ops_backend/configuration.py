from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"
CONFIG_ENV_VAR = "PDF_OPS_CONFIG"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Environment variable -> (dotted config key, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "UPLOAD_DIR": ("storage.upload_dir", str),
    "PROCESSED_DIR": ("storage.processed_dir", str),
    "TEMP_DIR": ("storage.temp_dir", str),
    "DATABASE_PATH": ("storage.database_path", str),
    "MAX_FILE_SIZE_MB": ("limits.max_file_size_mb", int),
    "MAX_FILES": ("limits.max_files", int),
    "MAX_WORKERS": ("executor.max_workers", int),
    "MAX_PENDING_TASKS": ("executor.max_pending", int),
    "RECORD_RETENTION_DAYS": ("retention.record_retention_days", int),
    "TEMP_FILE_LIFETIME": ("retention.temp_file_lifetime_hours", float),
    "FILE_CLEANUP_INTERVAL": ("retention.sweep_interval_hours", float),
    "RATE_LIMIT_ENABLED": ("rate_limit.enabled", _flag),
    "RATE_LIMIT_WINDOW": ("rate_limit.window_minutes", int),
    "RATE_LIMIT_MAX_REQUESTS": ("rate_limit.max_requests", int),
    "CORS_ORIGIN": ("server.cors_origins", _csv),
    "LOG_LEVEL": ("logging.level", str),
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect recognised environment variables as dotted-key overrides."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for variable, (key, parse) in ENV_OVERRIDES.items():
        raw = environ.get(variable)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = parse(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {variable}: {raw!r}") from exc
    return overrides


def make_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DictConfig:
    """
    Build the runtime settings.

    Precedence, lowest first: packaged defaults, the YAML file named by
    ``PDF_OPS_CONFIG``, environment variables, then ``overrides``. The result
    is in struct mode so unknown keys are rejected.
    """
    environ = os.environ if environ is None else environ
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    extra_path = environ.get(CONFIG_ENV_VAR)
    if extra_path:
        base = OmegaConf.merge(base, OmegaConf.load(extra_path))

    for key, value in env_overrides(environ).items():
        OmegaConf.update(base, key, value, merge=False)

    if overrides:
        base = OmegaConf.merge(base, OmegaConf.create(overrides))
    return base


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    return make_settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("pdf_ops_backend").setLevel(level.upper())
