from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from platformdirs import user_config_path

from .errors import ConfigurationError

DEFAULT_REGISTRY_URL = "https://hb.randao.net"
DEFAULT_REGISTRY_PROCESS_ID = "afj-S1wpWK07iSs9jIttoPJsptf4Db6ubZ_CLODdEpQ"
DEFAULT_GATEWAY_URL = "https://arweave.net"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_LIMIT = 8
DEFAULT_MAX_DEPTH = 10

LOCK_FILENAME = "skills-lock.json"

_LOCAL_HOSTS = ("http://localhost", "http://127.0.0.1")


@dataclass(frozen=True)
class Config:
    registry_url: str = DEFAULT_REGISTRY_URL
    registry_process_id: str = DEFAULT_REGISTRY_PROCESS_ID
    gateway_url: str = DEFAULT_GATEWAY_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_workers: int = DEFAULT_MAX_WORKERS
    install_root: str | None = None  # None: ./.claude/skills (or ~/.claude/skills with --global)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("AGENTSKILLS_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("agentskills") / "config.json"


def validate_url(field: str, url: str) -> str:
    value = url.strip().rstrip("/")
    if value.startswith("https://") or value.startswith(_LOCAL_HOSTS):
        return value
    raise ConfigurationError(field, f"{url!r} must use https://")


def _clamp_workers(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError("max_workers", f"{value!r} is not an integer") from e
    return max(1, min(MAX_WORKERS_LIMIT, n))


def _coerce_timeout(value: Any) -> float:
    try:
        t = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError("timeout_s", f"{value!r} is not a number") from e
    if t <= 0:
        raise ConfigurationError("timeout_s", "must be positive")
    return t


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError("config", f"could not read {path}: {e}") from e
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def apply_env(cfg: Config, env: Mapping[str, str] | None = None) -> Config:
    """Environment overrides config file values; callers apply CLI flags on top."""
    env = os.environ if env is None else env
    return replace(
        cfg,
        registry_url=env.get("HYPERBEAM_NODE") or cfg.registry_url,
        registry_process_id=env.get("AO_REGISTRY_PROCESS_ID") or cfg.registry_process_id,
        gateway_url=env.get("ARWEAVE_GATEWAY") or cfg.gateway_url,
        timeout_s=env.get("AGENTSKILLS_TIMEOUT_S") or cfg.timeout_s,
        max_workers=env.get("AGENTSKILLS_MAX_WORKERS") or cfg.max_workers,
    )


def normalize_config(cfg: Config) -> Config:
    return replace(
        cfg,
        registry_url=validate_url("registry_url", cfg.registry_url),
        gateway_url=validate_url("gateway_url", cfg.gateway_url),
        timeout_s=_coerce_timeout(cfg.timeout_s),
        max_workers=_clamp_workers(cfg.max_workers),
    )


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def resolve_install_root(cfg: Config, *, override: str | Path | None = None, global_install: bool = False) -> Path:
    if override is not None:
        return Path(override).expanduser().resolve()
    if global_install:
        return (Path.home() / ".claude" / "skills").resolve()
    if cfg.install_root:
        return Path(cfg.install_root).expanduser().resolve()
    return (Path.cwd() / ".claude" / "skills").resolve()


def lock_file_path(install_root: Path) -> Path:
    # ~/.claude/skills -> ~/.claude/skills-lock.json
    return install_root.parent / LOCK_FILENAME
