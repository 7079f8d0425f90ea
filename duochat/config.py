"""
Client configuration.

Settings are resolved in three layers: a named profile from the YAML profiles
file (merged over ``default``), environment overrides, then CLI flags applied
by :mod:`duochat.main`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .coordinator import DEFAULT_NEGOTIATION_TIMEOUT
from .rtc.media import MediaConfig
from .rtc.transport import TransportConfig

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"
DEFAULT_PROFILE = "default"

ENV_PROFILES = "DUOCHAT_PROFILES"
ENV_SIGNALING_URL = "DUOCHAT_SIGNALING_URL"
ENV_STUN_SERVER = "DUOCHAT_STUN_SERVER"


class ConfigError(ValueError):
    """Raised for unreadable profile files or unknown profiles."""


@dataclass
class SignalingConfig:
    url: str = "http://127.0.0.1:5000"
    socketio_path: str = "socket.io"
    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    reconnect_delay_max: float = 30.0
    handshake_timeout: float = 10.0


@dataclass
class StatusApiConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    enabled: bool = True


@dataclass
class ClientConfig:
    """Top level client configuration."""

    profile: str = DEFAULT_PROFILE
    signaling: SignalingConfig = field(default_factory=SignalingConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    status_api: StatusApiConfig = field(default_factory=StatusApiConfig)
    negotiation_timeout: float = DEFAULT_NEGOTIATION_TIMEOUT

    @classmethod
    def from_mapping(cls, profile: str, data: Mapping[str, Any]) -> "ClientConfig":
        try:
            negotiation = dict(data.get("negotiation") or {})
            media = dict(data.get("media") or {})
            if "video_options" in media:
                media["video_options"] = {str(k): str(v) for k, v in (media["video_options"] or {}).items()}
            return cls(
                profile=profile,
                signaling=SignalingConfig(**dict(data.get("signaling") or {})),
                transport=TransportConfig(**dict(data.get("transport") or {})),
                media=MediaConfig(**media),
                status_api=StatusApiConfig(**dict(data.get("status_api") or {})),
                negotiation_timeout=float(negotiation.get("timeout", DEFAULT_NEGOTIATION_TIMEOUT)),
            )
        except TypeError as exc:
            raise ConfigError(f"invalid settings in profile '{profile}': {exc}") from exc


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def read_profiles(path: Optional[Path] = None) -> Dict[str, Any]:
    target = Path(path or os.environ.get(ENV_PROFILES) or PROFILES_PATH).expanduser()
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profiles file %s not found; using built-in defaults", target)
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse {target}: {exc}") from exc
    if not isinstance(profiles, dict):
        raise ConfigError(f"{target} must contain a mapping of profiles")
    return profiles


def load_config(
    profile: str = DEFAULT_PROFILE,
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> ClientConfig:
    profiles = read_profiles(path)
    if profile != DEFAULT_PROFILE and profile not in profiles:
        raise ConfigError(f"unknown profile '{profile}'")

    data = dict(profiles.get(DEFAULT_PROFILE) or {})
    if profile != DEFAULT_PROFILE:
        data = _deep_merge(data, profiles.get(profile) or {})
    config = ClientConfig.from_mapping(profile, data)

    env = os.environ if environ is None else environ
    if env.get(ENV_SIGNALING_URL):
        config.signaling.url = env[ENV_SIGNALING_URL]
    if ENV_STUN_SERVER in env:
        config.transport.stun_server = env[ENV_STUN_SERVER] or None
    return config


__all__ = [
    "ClientConfig",
    "ConfigError",
    "SignalingConfig",
    "StatusApiConfig",
    "load_config",
    "read_profiles",
]
