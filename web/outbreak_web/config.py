from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import requests
import yaml

from outbreak_web.client import DEFAULT_TIMEOUT_S, DEFAULT_USER_AGENT, configure_session
from outbreak_web.errors import ConfigError
from outbreak_web.executor import DEFAULT_MAX_WORKERS
from outbreak_web.similarity import DEFAULT_NUM_TO_RETURN, DEFAULT_THRESHOLD


CONFIG_ENV_VAR = "OUTBREAK_CONFIG_PATH"


@dataclass
class EndpointsConfig:
    epi: str
    genomics: str
    resources: str


@dataclass
class HttpConfig:
    timeout_s: float = DEFAULT_TIMEOUT_S
    user_agent: str = DEFAULT_USER_AGENT
    max_workers: int = DEFAULT_MAX_WORKERS

    def session(self) -> requests.Session:
        return configure_session(timeout=self.timeout_s, user_agent=self.user_agent)


@dataclass
class SimilarityConfig:
    threshold: float = DEFAULT_THRESHOLD
    logged: bool = True
    num_to_return: int = DEFAULT_NUM_TO_RETURN


@dataclass
class AppConfig:
    raw: Dict[str, Any]
    endpoints: EndpointsConfig
    curated_file: Optional[str]
    http: HttpConfig
    similarity: SimilarityConfig


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "outbreak.yaml"


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path} (or set {CONFIG_ENV_VAR})") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a YAML mapping, got {type(data).__name__}.")
    return data


def _coerce_endpoints(section: Any) -> EndpointsConfig:
    if not isinstance(section, dict):
        raise ConfigError("'endpoints' section must be a mapping/object.")

    urls: Dict[str, str] = {}
    for key in ("epi", "genomics", "resources"):
        url = section.get(key)
        if not url:
            raise ConfigError(f"No '{key}' endpoint configured. Please define 'endpoints.{key}'.")
        urls[key] = str(url)
    return EndpointsConfig(**urls)


def _coerce_http(section: Any) -> HttpConfig:
    if not isinstance(section, dict):
        return HttpConfig()
    try:
        cfg = HttpConfig(
            timeout_s=float(section.get("timeout_s", DEFAULT_TIMEOUT_S)),
            user_agent=str(section.get("user_agent", DEFAULT_USER_AGENT)),
            max_workers=int(section.get("max_workers", DEFAULT_MAX_WORKERS)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid 'http' section: {exc}") from exc
    if cfg.max_workers < 1:
        raise ConfigError("'http.max_workers' must be at least 1.")
    return cfg


def _coerce_similarity(section: Any) -> SimilarityConfig:
    if not isinstance(section, dict):
        return SimilarityConfig()
    try:
        cfg = SimilarityConfig(
            threshold=float(section.get("threshold", DEFAULT_THRESHOLD)),
            logged=bool(section.get("logged", True)),
            num_to_return=int(section.get("num_to_return", DEFAULT_NUM_TO_RETURN)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid 'similarity' section: {exc}") from exc
    if not 0 <= cfg.threshold < 1:
        raise ConfigError("'similarity.threshold' must be in [0, 1).")
    if cfg.num_to_return < 0:
        raise ConfigError("'similarity.num_to_return' must not be negative.")
    return cfg


_CACHED_CONFIG: Optional[AppConfig] = None


def load_config(force_reload: bool = False, path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load and validate the outbreak data-layer configuration.

    Precedence:
    1. An explicit ``path`` (always re-read).
    2. The path from OUTBREAK_CONFIG_PATH if set.
    3. Otherwise `web/configs/outbreak.yaml`.
    """

    global _CACHED_CONFIG
    if path is None and _CACHED_CONFIG is not None and not force_reload:
        return _CACHED_CONFIG

    if path is not None:
        resolved = Path(path).expanduser()
    else:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        resolved = Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH

    raw = _read_config_file(resolved)
    curated_file = raw.get("curated_file")

    _CACHED_CONFIG = AppConfig(
        raw=raw,
        endpoints=_coerce_endpoints(raw.get("endpoints")),
        curated_file=str(curated_file) if curated_file else None,
        http=_coerce_http(raw.get("http") or {}),
        similarity=_coerce_similarity(raw.get("similarity") or {}),
    )
    return _CACHED_CONFIG


__all__ = [
    "AppConfig",
    "EndpointsConfig",
    "HttpConfig",
    "SimilarityConfig",
    "ConfigError",
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_PATH",
    "load_config",
]
