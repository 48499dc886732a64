# _config.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import copy
import json
import os

from _base import ConfigError
from _logging import log as default_log

ROOT = Path(__file__).resolve().parent

# ---------- Paths (Docker-aware) ----------
# If running from /app (typical inside a container), keep config, store and cache under /config.
CONFIG_BASE = Path("/config") if str(ROOT).startswith("/app") else ROOT
CONFIG_PATH = CONFIG_BASE / "config.json"
CACHE_DIR = CONFIG_BASE / "cache"

DEFAULT_CFG: Dict[str, Any] = {
    "storage": {
        "path": str(CONFIG_BASE / "binge_list_store.json"),
        "quota_bytes": 5 * 1024 * 1024,
        "poll_interval": 1.0,
    },
    "tmdb": {"api_key": "", "region": "US", "cache_dir": str(CACHE_DIR), "ttl_days": 14},
    "billing": {"price_cents": 999, "currency": "usd", "free_limit": 10},
    "supabase": {"url": "", "service_role_key": ""},
    "stripe": {"secret_key": ""},
    "subscription": {"check_interval": 30.0},
    "runtime": {"debug": False, "log_level": "info", "log_json": ""},
}

# env var -> (section, key); applied on load, never written back
ENV_OVERRIDES = {
    "TMDB_API_KEY": ("tmdb", "api_key"),
    "STRIPE_SECRET_KEY": ("stripe", "secret_key"),
    "SUPABASE_URL": ("supabase", "url"),
    "SUPABASE_SERVICE_ROLE_KEY": ("supabase", "service_role_key"),
    "BINGE_LIST_STORE": ("storage", "path"),
    "BINGE_LIST_LOG_LEVEL": ("runtime", "log_level"),
}


def deep_merge(base: Mapping[str, Any], over: Mapping[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(dict(base))
    for k, v in (over or {}).items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


# ---------- Config read/write (JSON only) ----------
def _read_json(p: Path) -> Dict[str, Any]:
    with p.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(p: Path, data: Dict[str, Any]) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    tmp.replace(p)


def apply_env(cfg: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if env is None else env
    out = copy.deepcopy(cfg)
    for var, (section, key) in ENV_OVERRIDES.items():
        val = (env.get(var) or "").strip()
        if val:
            out.setdefault(section, {})[key] = val
    return out


def read_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Defaults <- config.json, without environment overrides."""
    p = Path(path) if path else CONFIG_PATH
    file_cfg: Dict[str, Any] = {}
    if p.exists():
        try:
            file_cfg = _read_json(p)
        except (OSError, ValueError) as e:
            default_log.warn(f"[config] {p} unreadable, using defaults: {e}")
        if not isinstance(file_cfg, dict):
            default_log.warn(f"[config] {p} is not a JSON object, using defaults")
            file_cfg = {}
    return deep_merge(DEFAULT_CFG, file_cfg)


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Defaults <- config.json <- environment. A missing file is created with the defaults."""
    p = Path(path) if path else CONFIG_PATH
    if not p.exists():
        try:
            save_config(DEFAULT_CFG, p)
        except OSError as e:
            default_log.warn(f"[config] cannot write {p}: {e}")
    return apply_env(read_config_file(p), env)


def save_config(cfg: Mapping[str, Any], path: Optional[Path] = None) -> None:
    try:
        _write_json(Path(path) if path else CONFIG_PATH, dict(cfg))
    except TypeError as e:
        raise ConfigError(f"config is not JSON serializable: {e}") from e


def log_level(cfg: Mapping[str, Any]) -> str:
    rt = cfg.get("runtime") or {}
    if rt.get("debug"):
        return "debug"
    return str(rt.get("log_level") or "info").lower()


def configure_logging(cfg: Mapping[str, Any], logger: Any = None, *, debug: bool = False) -> None:
    """Apply runtime.log_level / runtime.debug and the optional JSON-lines sink (runtime.log_json)."""
    lg = logger or default_log
    lg.set_level("debug" if debug else log_level(cfg))
    path = str((cfg.get("runtime") or {}).get("log_json") or "").strip()
    if path:
        try:
            lg.enable_json(path)
        except OSError as e:
            lg.warn(f"[config] cannot open log file {path}: {e}")


__all__ = [
    "DEFAULT_CFG", "CONFIG_BASE", "CONFIG_PATH", "CACHE_DIR",
    "load_config", "read_config_file", "save_config", "deep_merge", "apply_env", "log_level",
    "configure_logging",
]
