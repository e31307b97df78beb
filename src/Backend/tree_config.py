"""
Configuration for the SkillForest API.

Values come from the environment (a local ``.env`` file is loaded first) and
are clamped to safe bounds.
"""
import os
from dataclasses import dataclass, field, asdict
from typing import Any

from dotenv import load_dotenv

load_dotenv()

ENV_PREFIX = "SKILLFOREST_"


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AppConfig:
    """Settings for the REST embedding."""

    host: str = "0.0.0.0"
    port: int = 5000
    debug: bool = False
    log_level: str = "INFO"

    # In-memory tree store (LRU)
    store_max: int = 50

    # CORS origins; "*" allows any
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "AppConfig":
        try:
            port = int(_env("PORT", "5000"))
        except ValueError:
            port = 5000
        try:
            store_max = int(_env("STORE_MAX", "50"))
        except ValueError:
            store_max = 50
        origins = [o.strip() for o in _env("CORS_ORIGINS", "*").split(",") if o.strip()]

        cfg = cls(
            host=_env("HOST", "0.0.0.0"),
            port=port,
            debug=_env_bool("DEBUG", False),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            store_max=store_max,
            cors_origins=origins or ["*"],
        )

        # clamp to safe bounds
        cfg.port = max(1, min(65535, cfg.port))
        cfg.store_max = max(1, min(10_000, cfg.store_max))
        return cfg

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AppConfig":
        base = asdict(cls())
        base.update({k: v for k, v in d.items() if k in base})
        return cls(**base)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(config_dict: dict[str, Any] | None = None) -> AppConfig:
    """Environment-backed config, or an explicit dict (tests)."""
    if config_dict is None:
        return AppConfig.from_env()
    return AppConfig.from_dict(config_dict)
