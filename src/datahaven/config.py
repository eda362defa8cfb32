"""datahaven configuration loader.

Search order (first existing file wins):
  1. Explicit path           (``--config`` on the CLI)
  2. ./datahaven.yaml, ./datahaven.toml
  3. ~/.datahaven/datahaven.yaml, ~/.datahaven/datahaven.toml
  4. /etc/datahaven.yaml, /etc/datahaven.toml

Files ending in .toml are read with tomllib, everything else as YAML; both
formats share the same s3 / mongodb / pipeline sections.

Credential overrides from the environment are applied on top:
  DATAHAVEN_S3_ACCESS_KEY, DATAHAVEN_S3_SECRET_KEY,
  DATAHAVEN_MONGODB_USER,  DATAHAVEN_MONGODB_PASSWORD

The loaded value is passed explicitly into every component constructor;
there is no process-wide config object. All YAML reads use yaml.safe_load().
"""

from __future__ import annotations

import os
import tomllib
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from datahaven.errors import ConfigError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONFIG_NAME: str = "datahaven.yaml"
TOML_CONFIG_NAME: str = "datahaven.toml"
_USER_CONFIG_DIR: Path = Path.home() / ".datahaven"
_SYSTEM_CONFIG_DIR: Path = Path("/etc")

_KNOWN_SECTIONS: frozenset[str] = frozenset(["s3", "mongodb", "pipeline"])

_MIB = 1024 * 1024


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class S3Cfg:
    """Object store connection (datahaven.yaml: s3:)."""

    region: str = "us-east-1"
    endpoint: str = ""
    access_key: str = ""
    secret_key: str = ""
    bucket: str = "datahaven"
    path_style: bool = True
    multipart_threshold: int = 8 * _MIB
    multipart_chunksize: int = 8 * _MIB

    def __repr__(self) -> str:
        return (
            f"S3Cfg(region={self.region!r}, endpoint={self.endpoint!r}, "
            f"bucket={self.bucket!r}, path_style={self.path_style!r})"
        )


@dataclass
class MongoCfg:
    """Metadata store connection (datahaven.yaml: mongodb:)."""

    user: str = ""
    password: str = ""
    host: str = "localhost"
    port: int = 27017
    database: str = "datahaven"
    timeout_ms: int = 5_000

    def __repr__(self) -> str:
        return (
            f"MongoCfg(user={self.user!r}, host={self.host!r}, port={self.port!r}, "
            f"database={self.database!r})"
        )


@dataclass
class PipelineCfg:
    """Ingestion pipeline tuning (datahaven.yaml: pipeline:).

    Attributes:
        collection: Metadata collection every record is written to.
        upload_workers: Maximum number of concurrent blob uploads.
        queue_size: Capacity of the scanner → coordinator queue; 1 gives a
            strict one-at-a-time handoff.
        upload_retries: Retries per S3 request after the first attempt (0 = no
            retry); backoff is handled by botocore.
        record_upload_outcomes: Append an upload outcome document to
            ``<collection>.uploads`` after every upload.
    """

    collection: str = "1"
    upload_workers: int = 4
    queue_size: int = 16
    upload_retries: int = 3
    record_upload_outcomes: bool = True


@dataclass
class DatahavenConfig:
    """Root configuration object, built by load_config()."""

    s3: S3Cfg = field(default_factory=S3Cfg)
    mongodb: MongoCfg = field(default_factory=MongoCfg)
    pipeline: PipelineCfg = field(default_factory=PipelineCfg)
    source: Path | None = None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _section(data: dict[str, Any], name: str, source: Path) -> dict[str, Any]:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{name}' in '{source}' must be a mapping.")
    return raw


def _as_int(raw: dict[str, Any], key: str, default: int, where: str, minimum: int | None = None) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{where}.{key} must be an integer, got {value!r}")
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}.{key} must be an integer, got {value!r}") from None
    if minimum is not None and result < minimum:
        raise ConfigError(f"{where}.{key} must be >= {minimum}, got {result}")
    return result


def _as_bool(raw: dict[str, Any], key: str, default: bool, where: str) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{where}.{key} must be true or false, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


def _cfg_from_dict(data: dict[str, Any], source: Path) -> DatahavenConfig:
    """Build a *DatahavenConfig* from a parsed YAML or TOML mapping."""
    cfg = DatahavenConfig(source=source)

    s = _section(data, "s3", source)
    d3 = cfg.s3
    cfg.s3 = S3Cfg(
        region=str(s.get("region", d3.region)),
        endpoint=str(s.get("endpoint", d3.endpoint) or ""),
        access_key=str(s.get("access_key", d3.access_key) or ""),
        secret_key=str(s.get("secret_key", d3.secret_key) or ""),
        bucket=str(s.get("bucket", d3.bucket)),
        path_style=_as_bool(s, "path_style", d3.path_style, "s3"),
        multipart_threshold=_as_int(
            s, "multipart_threshold", d3.multipart_threshold, "s3", minimum=5 * _MIB
        ),
        multipart_chunksize=_as_int(
            s, "multipart_chunksize", d3.multipart_chunksize, "s3", minimum=5 * _MIB
        ),
    )
    if not cfg.s3.bucket:
        raise ConfigError("s3.bucket must not be empty")

    m = _section(data, "mongodb", source)
    dm = cfg.mongodb
    cfg.mongodb = MongoCfg(
        user=str(m.get("user", dm.user) or ""),
        password=str(m.get("password", dm.password) or ""),
        host=str(m.get("host", dm.host)),
        port=_as_int(m, "port", dm.port, "mongodb", minimum=1),
        database=str(m.get("database", dm.database)),
        timeout_ms=_as_int(m, "timeout_ms", dm.timeout_ms, "mongodb", minimum=1),
    )
    if cfg.mongodb.port > 65535:
        raise ConfigError(f"mongodb.port must be <= 65535, got {cfg.mongodb.port}")

    p = _section(data, "pipeline", source)
    dp = cfg.pipeline
    cfg.pipeline = PipelineCfg(
        collection=str(p.get("collection", dp.collection)),
        upload_workers=_as_int(p, "upload_workers", dp.upload_workers, "pipeline", minimum=1),
        queue_size=_as_int(p, "queue_size", dp.queue_size, "pipeline", minimum=1),
        upload_retries=_as_int(p, "upload_retries", dp.upload_retries, "pipeline", minimum=0),
        record_upload_outcomes=_as_bool(
            p, "record_upload_outcomes", dp.record_upload_outcomes, "pipeline"
        ),
    )
    if not cfg.pipeline.collection:
        raise ConfigError("pipeline.collection must not be empty")

    return cfg


def _apply_env_overrides(cfg: DatahavenConfig) -> DatahavenConfig:
    """Apply DATAHAVEN_* credential overrides."""
    if value := os.environ.get("DATAHAVEN_S3_ACCESS_KEY"):
        cfg.s3.access_key = value
    if value := os.environ.get("DATAHAVEN_S3_SECRET_KEY"):
        cfg.s3.secret_key = value
    if value := os.environ.get("DATAHAVEN_MONGODB_USER"):
        cfg.mongodb.user = value
    if value := os.environ.get("DATAHAVEN_MONGODB_PASSWORD"):
        cfg.mongodb.password = value
    return cfg


def search_paths(explicit: Path | None = None, cwd: Path | None = None) -> list[Path]:
    """Return candidate config paths in priority order."""
    if explicit is not None:
        return [explicit]
    base = cwd if cwd is not None else Path.cwd()
    return [
        directory / name
        for directory in (base, _USER_CONFIG_DIR, _SYSTEM_CONFIG_DIR)
        for name in (CONFIG_NAME, TOML_CONFIG_NAME)
    ]


def _read(path: Path) -> Any:
    """Parse *path* as TOML or YAML depending on its suffix."""
    try:
        if path.suffix.lower() == ".toml":
            with path.open("rb") as fh:
                return tomllib.load(fh)
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (yaml.YAMLError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Cannot parse '{path}': {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read '{path}': {exc}") from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(path: Path | None = None, *, cwd: Path | None = None) -> DatahavenConfig:
    """Locate, parse and validate the configuration file.

    Args:
        path: Explicit config file. When given, no other location is tried.
        cwd: Override the working directory searched for *datahaven.yaml*
            or *datahaven.toml* (for testing).

    Returns:
        Validated *DatahavenConfig* with environment overrides applied.

    Raises:
        ConfigError: If no config file exists, it cannot be parsed, or any
            value is invalid.
    """
    candidates = search_paths(path, cwd)
    found = next((c for c in candidates if c.is_file()), None)
    if found is None:
        tried = ", ".join(str(c) for c in candidates)
        raise ConfigError(f"No config file found (tried: {tried})")

    raw = _read(found)

    if not isinstance(raw, dict):
        raise ConfigError(f"'{found}' must contain a mapping at the top level.")

    _warn_unknown_keys(raw, found)
    cfg = _cfg_from_dict(raw, found)
    return _apply_env_overrides(cfg)


def ensure_config(path: Path) -> Path:
    """Write a template config to *path* if it does not exist.

    The file is created with mode 0o600 since it holds credentials.

    Returns:
        Path to the config file.
    """
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not path.exists():
        content = (
            "# datahaven configuration.\n"
            "# Credentials may also be supplied via environment variables:\n"
            "#   DATAHAVEN_S3_ACCESS_KEY / DATAHAVEN_S3_SECRET_KEY\n"
            "#   DATAHAVEN_MONGODB_USER / DATAHAVEN_MONGODB_PASSWORD\n"
            "\n"
            "s3:\n"
            "  region: us-east-1\n"
            "  endpoint: http://localhost:9000\n"
            "  access_key: \"\"\n"
            "  secret_key: \"\"\n"
            "  bucket: datahaven\n"
            "  path_style: true\n"
            "\n"
            "mongodb:\n"
            "  user: \"\"\n"
            "  password: \"\"\n"
            "  host: localhost\n"
            "  port: 27017\n"
            "\n"
            "pipeline:\n"
            "  collection: \"1\"\n"
            "  upload_workers: 4\n"
            "  queue_size: 16\n"
            "  upload_retries: 3\n"
        )
        path.write_text(content, encoding="utf-8")
        path.chmod(0o600)

    return path
