# apps/common/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

STORE_BACKENDS = ("postgrest", "memory")
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "app.yaml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _as_patterns(v: Any) -> Tuple[str, ...]:
    if isinstance(v, str):
        items = v.split(",")
    else:
        items = [str(x) for x in (v or [])]
    return tuple(s.strip() for s in items if s.strip())


@dataclass(frozen=True)
class AppSettings:
    store_backend: str
    store_url: str
    store_api_key: str
    step_timeout_s: float
    redis_url: str
    feed_channel: str
    auto_heal: bool
    sweep_interval_s: float
    off_domain_patterns: Tuple[str, ...]


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) SCAN_REVIEW_CONFIG_PATH env var
      3) config/app.yaml at the repository root
    Individual fields can be overridden via env vars:
      - SCAN_REVIEW_STORE_BACKEND (postgrest | memory)
      - SCAN_REVIEW_STORE_URL
      - SCAN_REVIEW_STORE_API_KEY
      - SCAN_REVIEW_STEP_TIMEOUT_S
      - SCAN_REVIEW_REDIS_URL
      - SCAN_REVIEW_FEED_CHANNEL
      - SCAN_REVIEW_AUTO_HEAL
      - SCAN_REVIEW_SWEEP_INTERVAL_S
      - SCAN_REVIEW_OFF_DOMAIN_PATTERNS (comma-separated)
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("SCAN_REVIEW_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    )
    cfg = _read_yaml(cfg_path)

    def pick(name: str, default: Any = None) -> Any:
        v = _env(f"SCAN_REVIEW_{name.upper()}")
        if v is not None:
            return v
        v = cfg.get(name)
        return default if v is None else v

    store_backend = str(pick("store_backend", "postgrest")).strip().lower()
    store_url = pick("store_url")
    store_api_key = pick("store_api_key")
    redis_url = pick("redis_url")

    missing: List[str] = []
    if store_backend not in STORE_BACKENDS:
        missing.append(f"store_backend / SCAN_REVIEW_STORE_BACKEND (one of {', '.join(STORE_BACKENDS)})")
    if store_backend == "postgrest":
        if not store_url:
            missing.append("store_url / SCAN_REVIEW_STORE_URL")
        if not store_api_key:
            missing.append("store_api_key / SCAN_REVIEW_STORE_API_KEY")
    if not redis_url:
        missing.append("redis_url / SCAN_REVIEW_REDIS_URL")

    if missing:
        raise ValueError(
            "Missing required configuration: " + ", ".join(missing) +
            f". Config file used: {cfg_path}"
        )

    return AppSettings(
        store_backend=store_backend,
        store_url=str(store_url or ""),
        store_api_key=str(store_api_key or ""),
        step_timeout_s=float(pick("step_timeout_s", 10.0)),
        redis_url=str(redis_url),
        feed_channel=str(pick("feed_channel", "scan_review.changes")),
        auto_heal=_as_bool(pick("auto_heal", True)),
        sweep_interval_s=float(pick("sweep_interval_s", 900)),
        off_domain_patterns=_as_patterns(pick("off_domain_patterns", ["non-ampalaya", "non ampalaya"])),
    )
