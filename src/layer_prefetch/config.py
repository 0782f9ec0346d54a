from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

DEFAULT_CACHE_DIR = "~/.cache/layer-prefetch"
ENV_PREFIX = "LAYER_PREFETCH_"

_EVICTION_POLICIES = frozenset({"eager", "lazy"})
_RE_SIZE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*([kmgt]i?b?|b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000, "kb": 1000, "kib": 1 << 10, "ki": 1 << 10,
    "m": 1000**2, "mb": 1000**2, "mib": 1 << 20, "mi": 1 << 20,
    "g": 1000**3, "gb": 1000**3, "gib": 1 << 30, "gi": 1 << 30,
    "t": 1000**4, "tb": 1000**4, "tib": 1 << 40, "ti": 1 << 40,
}


def parse_size(raw: Any) -> int:
    """Parse a byte size such as 1048576, "512MB" or "10GiB"."""
    if isinstance(raw, bool):
        raise ValueError(f"invalid size: {raw!r}")
    if isinstance(raw, (int, float)):
        return int(raw)
    m = _RE_SIZE.match(str(raw or ""))
    if not m:
        raise ValueError(f"invalid size: {raw!r}")
    unit = (m.group(2) or "").lower()
    return int(float(m.group(1)) * _SIZE_UNITS[unit])


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "y", "t", "on")


def _parse_ttl_overrides(raw: Any) -> Dict[str, float]:
    # env form: "ghcr.io=60,registry.local:5000=3600"
    if isinstance(raw, Mapping):
        return {str(k).strip().lower(): float(v) for k, v in raw.items()}
    out: Dict[str, float] = {}
    for part in str(raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        host, sep, ttl = part.partition("=")
        if not sep or not host.strip():
            raise ValueError(f"invalid manifest ttl override: {part!r}")
        out[host.strip().lower()] = float(ttl)
    return out


def _expand_dir(raw: Any) -> Path:
    s = str(raw or "").strip() or DEFAULT_CACHE_DIR
    return Path(os.path.expanduser(s))


@dataclass(frozen=True)
class PrefetchConfig:
    """Knobs for the cache store, fetcher pool, resolver and cluster scheduler."""

    concurrency_limit: int = 4
    cache_size_budget: int = 20 * (1 << 30)
    max_attempts: int = 5
    backoff_base_s: float = 0.5
    backoff_cap_s: float = 30.0
    manifest_ttl_s: float = 300.0
    manifest_ttl_overrides: Mapping[str, float] = field(default_factory=dict)
    attempt_timeout_s: float = 300.0
    task_timeout_s: float = 1800.0
    admission_timeout_s: float = 60.0
    admission_poll_s: float = 0.25
    eviction_policy: str = "eager"
    cache_dir: Path = field(default_factory=lambda: _expand_dir(DEFAULT_CACHE_DIR))
    cluster_concurrency: int = 8
    stagger_window_s: float = 0.0
    campaign_max_attempts: int = 3
    platform: str = "linux/amd64"
    registry_scheme: str = "https"
    verify_on_load: bool = False

    def __post_init__(self) -> None:
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if self.cache_size_budget < 0:
            raise ValueError("cache_size_budget must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base_s < 0 or self.backoff_cap_s < 0:
            raise ValueError("backoff_base_s/backoff_cap_s must be >= 0")
        if self.backoff_cap_s < self.backoff_base_s:
            raise ValueError("backoff_cap_s must be >= backoff_base_s")
        if self.manifest_ttl_s < 0:
            raise ValueError("manifest_ttl_s must be >= 0")
        for host, ttl in self.manifest_ttl_overrides.items():
            if ttl < 0:
                raise ValueError(f"manifest ttl override for {host} must be >= 0")
        if self.attempt_timeout_s <= 0 or self.task_timeout_s <= 0:
            raise ValueError("attempt_timeout_s/task_timeout_s must be > 0")
        if self.admission_timeout_s < 0 or self.admission_poll_s <= 0:
            raise ValueError("admission_timeout_s must be >= 0 and admission_poll_s > 0")
        if self.eviction_policy not in _EVICTION_POLICIES:
            raise ValueError(f"eviction_policy must be one of {sorted(_EVICTION_POLICIES)}")
        if self.cluster_concurrency < 1:
            raise ValueError("cluster_concurrency must be >= 1")
        if self.stagger_window_s < 0:
            raise ValueError("stagger_window_s must be >= 0")
        if self.campaign_max_attempts < 1:
            raise ValueError("campaign_max_attempts must be >= 1")
        if self.registry_scheme not in ("http", "https"):
            raise ValueError("registry_scheme must be http or https")
        if self.platform.count("/") not in (1, 2):
            raise ValueError("platform must be os/arch[/variant]")

    def manifest_ttl_for(self, registry: str) -> float:
        return float(self.manifest_ttl_overrides.get(registry.lower(), self.manifest_ttl_s))


_COERCE: Dict[str, Callable[[Any], Any]] = {
    "concurrency_limit": int,
    "cache_size_budget": parse_size,
    "max_attempts": int,
    "backoff_base_s": float,
    "backoff_cap_s": float,
    "manifest_ttl_s": float,
    "manifest_ttl_overrides": _parse_ttl_overrides,
    "attempt_timeout_s": float,
    "task_timeout_s": float,
    "admission_timeout_s": float,
    "admission_poll_s": float,
    "eviction_policy": lambda v: str(v).strip().lower(),
    "cache_dir": _expand_dir,
    "cluster_concurrency": int,
    "stagger_window_s": float,
    "campaign_max_attempts": int,
    "platform": lambda v: str(v).strip(),
    "registry_scheme": lambda v: str(v).strip().lower(),
    "verify_on_load": _parse_bool,
}


def _coerce_all(raw: Mapping[str, Any], *, source: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in raw.items():
        conv = _COERCE.get(k)
        if conv is None:
            raise ValueError(f"{source}: unknown option {k!r}")
        try:
            out[k] = conv(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{source}: invalid value for {k}: {v!r}") from e
    return out


def config_from_env(base: Optional[PrefetchConfig] = None, environ: Optional[Mapping[str, str]] = None) -> PrefetchConfig:
    """Apply LAYER_PREFETCH_<OPTION> environment overrides on top of `base`."""
    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}
    for f in fields(PrefetchConfig):
        v = (env.get(ENV_PREFIX + f.name.upper()) or "").strip()
        if v:
            raw[f.name] = v
    cfg = base or PrefetchConfig()
    if not raw:
        return cfg
    return replace(cfg, **_coerce_all(raw, source="environment"))


def load_config(path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None) -> PrefetchConfig:
    """
    Build the effective config: defaults < TOML file < environment.

    The TOML file holds a single `[prefetch]` table whose keys are the
    PrefetchConfig field names.
    """
    cfg = PrefetchConfig()
    if path is not None:
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        table = data.get("prefetch")
        if table is None:
            table = {}
        if not isinstance(table, dict):
            raise ValueError(f"{path}: [prefetch] must be a table")
        if table:
            cfg = replace(cfg, **_coerce_all(table, source=str(path)))
    return config_from_env(cfg, environ=environ)
