"""Configuration objects for the Osprey action server."""


import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from osprey.sampling import SamplingConfig


LOG_LEVELS = ("critical", "error", "warning", "info", "debug", "trace")


@dataclass
class ServerConfig:
    """Knobs controlling the engine binding and the HTTP surface."""

    engine: str
    engine_options: Dict[str, str] = field(default_factory=dict)
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    debug: bool = False
    jpeg_quality: int = 90
    url_safe_images: bool = False
    default_sampling: SamplingConfig = field(default_factory=SamplingConfig)

    def __post_init__(self) -> None:
        if not self.engine:
            raise ValueError("engine reference must be provided")
        if self.port <= 0 or self.port > 65535:
            raise ValueError("port must be between 1 and 65535")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        if not (1 <= self.jpeg_quality <= 100):
            raise ValueError("jpeg_quality must be in the range [1, 100]")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Build a config from ``OSPREY_*`` environment variables.

        OSPREY_ENGINE         (required) ``package.module:factory``
        OSPREY_ENGINE_OPTIONS comma separated ``key=value`` pairs for the factory
        OSPREY_HOST           (default: 0.0.0.0)
        OSPREY_PORT           (default: 8000)
        OSPREY_LOG_LEVEL      (default: info)
        OSPREY_DEBUG          (default: false) log every prompt
        OSPREY_JPEG_QUALITY   (default: 90)
        OSPREY_URL_SAFE_IMAGES (default: false)
        """

        env = os.environ if environ is None else environ
        engine = env.get("OSPREY_ENGINE")
        if not engine:
            raise ValueError("OSPREY_ENGINE must be set to 'package.module:factory'")
        return cls(
            engine=engine,
            engine_options=parse_options(env.get("OSPREY_ENGINE_OPTIONS", "")),
            host=env.get("OSPREY_HOST", "0.0.0.0"),
            port=int(env.get("OSPREY_PORT", "8000")),
            log_level=env.get("OSPREY_LOG_LEVEL", "info").lower(),
            debug=env_bool("OSPREY_DEBUG", False, env),
            jpeg_quality=int(env.get("OSPREY_JPEG_QUALITY", "90")),
            url_safe_images=env_bool("OSPREY_URL_SAFE_IMAGES", False, env),
        )


def env_bool(name: str, default: bool, environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    val = env.get(name)
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "on")


def parse_options(raw: str) -> Dict[str, str]:
    """Parse ``"a=1,b=two"`` into ``{"a": "1", "b": "two"}``."""

    options: Dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Engine option '{item}' must be in the form key=value")
        options[key.strip()] = value.strip()
    return options


__all__ = ["LOG_LEVELS", "ServerConfig", "env_bool", "parse_options"]
