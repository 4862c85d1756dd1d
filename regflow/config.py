"""
Configuration for the registration orchestration engine

Plain configuration objects with sensible defaults. Values can be overridden
from an optional JSON file (``api`` / ``engine`` sections) and from a small set
of environment variables.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

ENV_API_BASE_URL = "REGFLOW_API_BASE_URL"
ENV_API_KEY = "REGFLOW_API_KEY"
ENV_STATE_DIR = "REGFLOW_STATE_DIR"


class ApiConfig:
    """Remote account service configuration"""

    def __init__(self):
        self.base_url: str = "http://localhost:3000"
        self.api_key: str = ""
        self.timeout: float = 10.0          # seconds, per request
        self.poll_interval: float = 2.0     # seconds between code checks
        self.endpoints: Dict[str, str] = {
            "health": "/api/health",
            "start_monitor": "/api/start-monitor",
            "check_code": "/api/check-code",
            "accounts": "/api/accounts",
        }


class EngineConfig:
    """State machine, lock, validator and poller tuning"""

    def __init__(self):
        self.state_dir: str = str(Path.home() / ".regflow" / "state")
        self.cache_dir: str = str(Path.home() / ".regflow")

        # 锁参数 - lock lease parameters
        self.lock_timeout: float = 5.0
        self.lock_stale_after: float = 10.0
        self.lock_settle_delay: float = 0.05
        self.lock_poll_interval: float = 0.1

        # Sync heartbeat
        self.heartbeat_interval: float = 5.0
        self.sync_stale_after: float = 30.0

        # Workflow retries and verification polling
        self.max_retries: int = 3
        self.poll_jitter: float = 0.3
        self.poll_deadline: float = 120.0
        self.poll_call_timeout: float = 2.5
        self.retry_cooldown: float = 3.0
        self.rearm_timeout: float = 60.0

        # Validator time windows
        self.expire_after: float = 30 * 60
        self.warn_after: float = 10 * 60
        self.validator_call_timeout: float = 3.0

        # Identity generation and target page
        self.email_prefix: str = "reg"
        self.email_domain: str = "example.com"
        self.registration_url: str = ""


class RegflowConfig:
    """Top level configuration bundle"""

    def __init__(self, api: Optional[ApiConfig] = None, engine: Optional[EngineConfig] = None):
        self.api = api or ApiConfig()
        self.engine = engine or EngineConfig()

    def to_dict(self) -> Dict[str, Any]:
        return {"api": dict(vars(self.api)), "engine": dict(vars(self.engine))}


def _apply_section(target: object, values: Dict[str, Any], section: str):
    for key, value in values.items():
        if not hasattr(target, key):
            logger.warning(f"Ignoring unknown {section} setting: {key}")
            continue
        if key == "endpoints" and isinstance(value, dict):
            merged = dict(getattr(target, key))
            merged.update(value)
            value = merged
        setattr(target, key, value)


def load_config(path: Optional[Union[str, Path]] = None, env: Optional[Dict[str, str]] = None) -> RegflowConfig:
    """
    Build a configuration from defaults, an optional JSON file and the environment

    Args:
        path: JSON file with optional "api" and "engine" objects
        env: Environment mapping (defaults to os.environ)

    Returns:
        RegflowConfig: the merged configuration
    """
    config = RegflowConfig()
    env = os.environ if env is None else env

    if path:
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning(f"Config file not found, using defaults: {config_path}")
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a JSON object: {config_path}")
        _apply_section(config.api, data.get("api", {}), "api")
        _apply_section(config.engine, data.get("engine", {}), "engine")

    if env.get(ENV_API_BASE_URL):
        config.api.base_url = env[ENV_API_BASE_URL]
    if env.get(ENV_API_KEY):
        config.api.api_key = env[ENV_API_KEY]
    if env.get(ENV_STATE_DIR):
        config.engine.state_dir = env[ENV_STATE_DIR]

    return config
