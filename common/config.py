from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict = {
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
        "cors_origins": "*",
        "log_dir": "./logs",
        "log_level": "INFO",
        "tiles_dir": "./tiles",
        "shutdown_timeout": 10.0,
        "cache_max_age": 3600,
    }
}

# env var -> key under `server:`
ENV_OVERRIDES = {
    "HOST": "host",
    "PORT": "port",
    "ALLOWED_ORIGINS": "cors_origins",
    "LOG_DIR": "log_dir",
    "LOG_LEVEL": "log_level",
    "TILES_DIR": "tiles_dir",
    "SHUTDOWN_TIMEOUT": "shutdown_timeout",
    "CACHE_MAX_AGE": "cache_max_age",
}


@dataclass(slots=True)
class Settings:
    """
    Runtime configuration for the tile server.

    Attributes:
        host, port: listen address.
        cors_origins: allowed origins; ["*"] means any origin.
        log_dir: directory for combined.log / error.log.
        log_level: root logger level name.
        tiles_dir: directory scanned for *.mbtiles archives.
        shutdown_timeout: seconds to wait for in-flight requests before forcing exit.
        cache_max_age: max-age (seconds) of the default tile Cache-Control header.
    """
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_dir: Path = Path("./logs")
    log_level: str = "INFO"
    tiles_dir: Path = Path("./tiles")
    shutdown_timeout: float = 10.0
    cache_max_age: int = 3600

    def __post_init__(self) -> None:
        if not (0 <= self.port <= 65535):
            raise ValueError(f"port out of range: {self.port}")
        if self.shutdown_timeout <= 0:
            raise ValueError("shutdown_timeout must be > 0")
        if self.cache_max_age < 0:
            raise ValueError("cache_max_age must be >= 0")
        self.log_dir = Path(self.log_dir)
        self.tiles_dir = Path(self.tiles_dir)
        self.log_level = str(self.log_level).upper()


def parse_origins(value) -> List[str]:
    """Accept '*', 'a,b,c' or a YAML list; blanks are dropped."""
    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    else:
        items = [v.strip() for v in str(value).split(",")]
    items = [v for v in items if v]
    if not items or "*" in items:
        return ["*"]
    return items


def _load_yaml(path: str) -> Dict:
    if not Path(path).exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")
    return data


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from defaults, an optional YAML file and environment variables.

    Precedence (highest first): environment, YAML `server:` section, DEFAULTS.
    The YAML path is `path`, else $CONFIG_PATH, else config/params.yaml; a
    missing file is not an error.
    """
    env = os.environ if environ is None else environ
    cfg_path = path or env.get("CONFIG_PATH") or DEFAULT_CONFIG_PATH

    merged = dict(DEFAULTS["server"])
    merged.update(_load_yaml(cfg_path).get("server") or {})
    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            merged[key] = env[var]

    try:
        return Settings(
            host=str(merged["host"]),
            port=int(merged["port"]),
            cors_origins=parse_origins(merged["cors_origins"]),
            log_dir=Path(merged["log_dir"]),
            log_level=str(merged["log_level"]),
            tiles_dir=Path(merged["tiles_dir"]),
            shutdown_timeout=float(merged["shutdown_timeout"]),
            cache_max_age=int(merged["cache_max_age"]),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid configuration: {e}") from e
