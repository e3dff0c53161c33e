"""
Call settings.

Loaded from calls.yaml in the config directory. Missing file or missing keys
fall back to defaults, so a fresh install runs without any config.

Example calls.yaml:

    ice_servers:
      - urls: ["stun:stun.l.google.com:19302"]
      - urls: ["turn:turn.example.com:3478"]
        username: alice
        credential: secret
    ring_timeout: 30
    reconnect:
      attempts: 3
      delay: 1.0
    devices:
      microphone: ""
      camera: ""
      speaker: ""
      earpiece: ""
    feed:
      jid: alice@example.com
      password: secret
    logging:
      level: INFO
      retention_days: 14
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .constants import (
    DEFAULT_RING_TIMEOUT, DEFAULT_RECONNECT_ATTEMPTS, DEFAULT_RECONNECT_DELAY,
    DEFAULT_READY_TIMEOUT, DEFAULT_TICK_INTERVAL, DEFAULT_MISSED_LOOKBACK,
)
from ..version import DEFAULT_ICE_SERVERS


logger = logging.getLogger('ringline.config')


@dataclass
class DeviceSettings:
    """Capture/playback device names (empty = system default)."""
    microphone: str = ''
    camera: str = ''
    speaker: str = ''
    earpiece: str = ''


@dataclass
class FeedSettings:
    """Credentials for the XMPP side-channel (unused by the in-process feed)."""
    jid: str = ''
    password: str = ''
    domain: str = ''


@dataclass
class CallConfig:
    ice_servers: List[Dict[str, Any]] = field(default_factory=lambda: [dict(s) for s in DEFAULT_ICE_SERVERS])
    ring_timeout: float = DEFAULT_RING_TIMEOUT
    reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    ready_timeout: float = DEFAULT_READY_TIMEOUT
    tick_interval: float = DEFAULT_TICK_INTERVAL
    missed_lookback: float = DEFAULT_MISSED_LOOKBACK
    reject_when_busy: bool = True
    widget_base_url: str = 'https://meet.jit.si'
    database_path: Optional[str] = None
    log_level: str = 'INFO'
    log_retention_days: int = 0
    devices: DeviceSettings = field(default_factory=DeviceSettings)
    feed: FeedSettings = field(default_factory=FeedSettings)

    def __post_init__(self):
        if self.reconnect_attempts < 0:
            raise ValueError(f"reconnect_attempts must be >= 0, got {self.reconnect_attempts}")
        if self.ring_timeout <= 0:
            raise ValueError(f"ring_timeout must be > 0, got {self.ring_timeout}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CallConfig':
        """Build config from the parsed YAML mapping."""
        data = data or {}
        reconnect = data.get('reconnect') or {}
        logging_cfg = data.get('logging') or {}

        kwargs: Dict[str, Any] = {}
        for key in ('ice_servers', 'ring_timeout', 'ready_timeout', 'tick_interval',
                    'missed_lookback', 'reject_when_busy', 'widget_base_url', 'database_path'):
            if data.get(key) is not None:
                kwargs[key] = data[key]
        if 'attempts' in reconnect:
            kwargs['reconnect_attempts'] = int(reconnect['attempts'])
        if 'delay' in reconnect:
            kwargs['reconnect_delay'] = float(reconnect['delay'])
        if 'level' in logging_cfg:
            kwargs['log_level'] = str(logging_cfg['level']).upper()
        if 'retention_days' in logging_cfg:
            kwargs['log_retention_days'] = int(logging_cfg['retention_days'])

        kwargs['devices'] = DeviceSettings(**(data.get('devices') or {}))
        kwargs['feed'] = FeedSettings(**(data.get('feed') or {}))
        return cls(**kwargs)


def load_config(config_path: Optional[Path] = None) -> CallConfig:
    """
    Load call settings from YAML.

    Args:
        config_path: Path to calls.yaml (default: <config_dir>/calls.yaml)

    Returns:
        CallConfig (defaults when the file does not exist)
    """
    if config_path is None:
        from ..utils.paths import get_paths
        config_path = get_paths().config_path

    config_file = Path(config_path)
    if not config_file.exists():
        logger.debug(f"No call settings at {config_file}, using defaults")
        return CallConfig()

    with open(config_file, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    config = CallConfig.from_dict(data)
    logger.debug(f"Loaded call settings from {config_file}")
    return config
