from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
import os
from typing import Any, Mapping

import yaml

from catalog_import.errors import ConfigError

ENV_PREFIX = "CATALOG_IMPORT_"


class ImportMode(str, Enum):
    DRY_RUN = "dry_run"
    EXECUTE = "execute"


@dataclass(frozen=True)
class ImportConfig:
    """
    Назначение:
        Параметры одного задания импорта: ресурсы, батчи, восстановление, лимиты.

    Инварианты/гарантии (проверяются validate()):
        - 0 < warning_threshold < critical_threshold <= 1
        - 0 < backpressure_threshold <= critical_threshold
        - batch_min_size <= batch_initial_size <= batch_max_size
        - все лимиты и задержки положительные
    """

    mode: ImportMode = ImportMode.EXECUTE

    # Resource monitor
    max_memory_mb: int = 512
    warning_threshold: float = 0.70
    critical_threshold: float = 0.85
    backpressure_threshold: float = 0.80
    sample_interval_ms: int = 1000
    per_operation_memory_mb: int = 10
    max_concurrency: int = 20

    # Batch sizing
    batch_initial_size: int = 50
    batch_min_size: int = 10
    batch_max_size: int = 250

    # Recovery
    max_retries: int = 3
    base_retry_delay_ms: int = 1000
    exponential_backoff: bool = True
    max_backoff_delay_ms: int = 30000
    dead_letter_threshold: int = 5
    dependency_retry_delay_ms: int = 5000
    checkpoint_interval_rows: int = 100
    writer_timeout_ms: int = 5000

    # Job limits / reporting
    max_rows: int | None = None
    report_items_limit: int = 1000
    metrics_interval_ms: int = 30000

    # Column mapping
    mapping_profile_id: str | None = None
    column_mapping: Mapping[str, str] = field(default_factory=dict)

    @property
    def dry_run(self) -> bool:
        return self.mode == ImportMode.DRY_RUN

    def validate(self) -> "ImportConfig":
        if not 0 < self.warning_threshold <= 1:
            raise ConfigError("warning_threshold must be in (0, 1]", "warning_threshold")
        if not 0 < self.critical_threshold <= 1:
            raise ConfigError("critical_threshold must be in (0, 1]", "critical_threshold")
        if not 0 < self.backpressure_threshold <= 1:
            raise ConfigError("backpressure_threshold must be in (0, 1]", "backpressure_threshold")
        if self.warning_threshold >= self.critical_threshold:
            raise ConfigError("warning_threshold must be less than critical_threshold", "warning_threshold")
        if self.backpressure_threshold > self.critical_threshold:
            raise ConfigError(
                "backpressure_threshold must not exceed critical_threshold", "backpressure_threshold"
            )
        for name in (
            "max_memory_mb",
            "sample_interval_ms",
            "per_operation_memory_mb",
            "max_concurrency",
            "batch_min_size",
            "max_retries",
            "base_retry_delay_ms",
            "max_backoff_delay_ms",
            "dead_letter_threshold",
            "checkpoint_interval_rows",
            "writer_timeout_ms",
            "report_items_limit",
            "metrics_interval_ms",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0", name)
        if not self.batch_min_size <= self.batch_initial_size <= self.batch_max_size:
            raise ConfigError(
                "batch sizes must satisfy batch_min_size <= batch_initial_size <= batch_max_size",
                "batch_initial_size",
            )
        if self.base_retry_delay_ms > self.max_backoff_delay_ms:
            raise ConfigError("base_retry_delay_ms must not exceed max_backoff_delay_ms", "base_retry_delay_ms")
        if self.max_rows is not None and self.max_rows <= 0:
            raise ConfigError("max_rows must be > 0", "max_rows")
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ImportConfig":
        """
        Назначение:
            Строит ImportConfig из словаря (секция `import:` YAML-конфига).
        Контракт:
            - неизвестные ключи -> ConfigError;
            - значения приводятся к типам полей.
        """
        return cls().with_overrides(data or {})

    def with_overrides(self, data: Mapping[str, Any]) -> "ImportConfig":
        known = {f.name: f for f in fields(self)}
        values: dict[str, Any] = {}
        for key, raw in data.items():
            if raw is None:
                continue
            if key not in known:
                raise ConfigError(f"Unknown import option: {key}", key)
            values[key] = _coerce_import_value(key, raw, getattr(self, key))
        return replace(self, **values)


def _coerce_import_value(key: str, raw: Any, current: Any) -> Any:
    try:
        if key == "mode":
            return ImportMode(str(raw).strip().lower().replace("-", "_"))
        if key == "column_mapping":
            if not isinstance(raw, Mapping):
                raise ValueError("mapping expected")
            return {str(k): str(v) for k, v in raw.items()}
        if key == "mapping_profile_id":
            return str(raw)
        if key == "max_rows":
            return int(raw)
        if isinstance(current, bool):
            return raw if isinstance(raw, bool) else parse_bool(str(raw))
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid value for {key}: {raw!r}", key) from exc
    return raw


@dataclass(frozen=True)
class Settings:
    # Catalog API
    api_url: str | None = None
    api_token: str | None = None
    timeout_seconds: float = 20.0
    retries: int = 3
    retry_backoff_seconds: float = 0.5
    tls_skip_verify: bool = False

    # Paths
    log_dir: str = "./logs"
    report_dir: str = "./reports"
    checkpoint_dir: str = "./checkpoints"
    artifact_dir: str = "./artifacts"

    # Misc
    log_level: str = "INFO"

    # Import
    import_config: ImportConfig = field(default_factory=ImportConfig)
    mapping_profiles: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    known_references: tuple[str, ...] = ()


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    sources_used: list[str]


def _read_yaml_config(path: Path) -> dict:
    if not path.exists():
        return {}
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data


def _env_get(name: str) -> str | None:
    v = os.getenv(ENV_PREFIX + name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def parse_bool(v: str) -> bool:
    vv = v.strip().lower()
    if vv in ("1", "true", "yes", "y"):
        return True
    if vv in ("0", "false", "no", "n"):
        return False
    raise ValueError(f"Invalid boolean value: {v}")


def _parse_profiles(raw: Any) -> dict[str, dict[str, str]]:
    if not raw:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError("mapping_profiles must be a mapping of profile id -> column mapping", "mapping_profiles")
    profiles: dict[str, dict[str, str]] = {}
    for profile_id, body in raw.items():
        mappings = body.get("mappings", body) if isinstance(body, Mapping) else None
        if not isinstance(mappings, Mapping):
            raise ConfigError(f"Invalid mapping profile: {profile_id}", "mapping_profiles")
        profiles[str(profile_id)] = {str(k): str(v) for k, v in mappings.items()}
    return profiles


def load_settings(
    config_path: str | None,
    cli_overrides: dict,
    import_overrides: dict | None = None,
) -> LoadedSettings:
    """
    Priority: CLI > ENV > config > defaults

    Секция `import:` конфига и import_overrides собираются в ImportConfig,
    который валидируется перед возвратом.
    """
    sources: list[str] = []
    defaults = Settings()

    # 1) config file
    cfg: dict = {}
    if config_path:
        cfg = _read_yaml_config(Path(config_path))
        if cfg:
            sources.append("config")

    # 2) env
    env = {
        "api_url": _env_get("API_URL"),
        "api_token": _env_get("API_TOKEN"),
        "timeout_seconds": _env_get("TIMEOUT_SECONDS"),
        "retries": _env_get("RETRIES"),
        "tls_skip_verify": _env_get("TLS_SKIP_VERIFY"),
        "log_dir": _env_get("LOG_DIR"),
        "report_dir": _env_get("REPORT_DIR"),
        "checkpoint_dir": _env_get("CHECKPOINT_DIR"),
        "artifact_dir": _env_get("ARTIFACT_DIR"),
        "log_level": _env_get("LOG_LEVEL"),
    }
    env_import = {
        "mode": _env_get("MODE"),
        "max_memory_mb": _env_get("MAX_MEMORY_MB"),
        "max_retries": _env_get("MAX_RETRIES"),
        "writer_timeout_ms": _env_get("WRITER_TIMEOUT_MS"),
        "max_rows": _env_get("MAX_ROWS"),
    }
    if any(v is not None for v in env.values()) or any(v is not None for v in env_import.values()):
        sources.append("env")

    try:
        # merge config -> env -> cli
        merged: dict[str, Any] = {
            "api_url": cfg.get("api_url", defaults.api_url),
            "api_token": cfg.get("api_token", defaults.api_token),
            "timeout_seconds": float(cfg.get("timeout_seconds", defaults.timeout_seconds)),
            "retries": int(cfg.get("retries", defaults.retries)),
            "retry_backoff_seconds": float(cfg.get("retry_backoff_seconds", defaults.retry_backoff_seconds)),
            "tls_skip_verify": cfg.get("tls_skip_verify", defaults.tls_skip_verify),
            "log_dir": cfg.get("log_dir", defaults.log_dir),
            "report_dir": cfg.get("report_dir", defaults.report_dir),
            "checkpoint_dir": cfg.get("checkpoint_dir", defaults.checkpoint_dir),
            "artifact_dir": cfg.get("artifact_dir", defaults.artifact_dir),
            "log_level": cfg.get("log_level", defaults.log_level),
        }

        # apply env
        for key, value in env.items():
            if value is None:
                continue
            if key == "timeout_seconds":
                merged[key] = float(value)
            elif key == "retries":
                merged[key] = int(value)
            elif key == "tls_skip_verify":
                merged[key] = parse_bool(value)
            else:
                merged[key] = value
    except ValueError as exc:
        raise ConfigError(f"Invalid settings value: {exc}") from exc

    # 3) apply CLI overrides (only those explicitly passed)
    if any(v is not None for v in cli_overrides.values()) or any(
        v is not None for v in (import_overrides or {}).values()
    ):
        sources.append("cli")

    for k, v in cli_overrides.items():
        if v is None:
            continue
        merged[k] = v

    import_section = cfg.get("import") or {}
    if not isinstance(import_section, Mapping):
        raise ConfigError("import section must be a mapping", "import")
    import_config = ImportConfig.from_mapping(import_section)
    import_config = import_config.with_overrides(env_import)
    import_config = import_config.with_overrides(import_overrides or {})
    import_config.validate()

    known_references = cfg.get("known_references") or []
    if not isinstance(known_references, list):
        raise ConfigError("known_references must be a list", "known_references")

    settings = Settings(
        api_url=merged["api_url"],
        api_token=merged["api_token"],
        timeout_seconds=merged["timeout_seconds"],
        retries=merged["retries"],
        retry_backoff_seconds=merged["retry_backoff_seconds"],
        tls_skip_verify=bool(merged["tls_skip_verify"]),
        log_dir=merged["log_dir"],
        report_dir=merged["report_dir"],
        checkpoint_dir=merged["checkpoint_dir"],
        artifact_dir=merged["artifact_dir"],
        log_level=merged["log_level"],
        import_config=import_config,
        mapping_profiles=_parse_profiles(cfg.get("mapping_profiles")),
        known_references=tuple(str(ref) for ref in known_references),
    )

    return LoadedSettings(settings=settings, sources_used=sources)
