"""
Embedding host configuration.

YAML file + environment overrides::

    log_level: INFO
    log_file: /tmp/uiembed.log
    trace_path: /tmp/uiembed.trace.jsonl
    socket_dir: /run/user/1000
    terminate_timeout: 2.0

Config env vars::

    UIEMBED_LOG_LEVEL=DEBUG
    UIEMBED_LOG_FILE=/tmp/uiembed.log
    UIEMBED_TRACE=/tmp/uiembed.trace.jsonl
    UIEMBED_SOCKET_DIR=/tmp
    UIEMBED_READ_CHUNK=65536
    UIEMBED_MAX_BUFFER=67108864
    UIEMBED_TERMINATE_TIMEOUT_S=2.0
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

__all__ = [
    "EmbedConfig",
    "default_config_path",
    "default_socket_dir",
]


def default_config_path() -> Path:
    """``$XDG_CONFIG_HOME/uiembed/config.yaml`` (or under ``~/.config``)."""
    base = os.environ.get("XDG_CONFIG_HOME", "").strip() or str(Path.home() / ".config")
    return Path(base) / "uiembed" / "config.yaml"


def default_socket_dir() -> str:
    """Directory for generated Unix socket addresses."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR", "").strip()
    if runtime_dir and Path(runtime_dir).is_dir():
        return runtime_dir
    return tempfile.gettempdir()


@dataclass
class EmbedConfig:
    """Settings shared by the host process and the channel layer.

    Attributes
    ----------
    log_level:
        Root log level name.
    log_file:
        Log destination; ``None`` means stderr. Never stdout, which may be
        the RPC channel.
    trace_path:
        JSONL protocol trace (channel open/close, attach, lifecycle).
    socket_dir:
        Where :func:`uiembed.rpc.stream.new_address` creates socket paths.
    read_chunk_size:
        Bytes requested per read from a byte channel.
    max_buffer_size:
        Largest undecoded frame the codec buffers before failing the channel.
    terminate_timeout:
        Seconds to wait for a spawned child to exit after its stdin closes.
    """

    log_level: str = "WARNING"
    log_file: Optional[str] = None
    trace_path: Optional[str] = None
    socket_dir: str = field(default_factory=default_socket_dir)
    read_chunk_size: int = 65536
    max_buffer_size: int = 64 * 1024 * 1024
    terminate_timeout: float = 2.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbedConfig":
        """Create from a mapping; unknown keys are logged and ignored."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("[Config] Ignoring unknown key: %s", key)
                continue
            kwargs[key] = value
        config = cls(**kwargs)
        config._coerce()
        return config

    @classmethod
    def load(cls, path: Optional[Path] = None, *, use_env: bool = True) -> "EmbedConfig":
        """
        Load configuration from a YAML file, then apply env overrides.

        Args:
            path: Path to config file (missing file -> defaults)
            use_env: Apply ``UIEMBED_*`` overrides on top

        Raises:
            ValueError: file is not valid YAML or not a mapping
        """
        data: Dict[str, Any] = {}
        if path is not None:
            path = Path(path)
            if path.exists():
                try:
                    with open(path, encoding="utf-8") as f:
                        loaded = yaml.safe_load(f)
                except yaml.YAMLError as e:
                    raise ValueError(f"invalid config file {path}: {e}") from e
                if loaded is None:
                    loaded = {}
                if not isinstance(loaded, dict):
                    raise ValueError(f"config file {path} must contain a mapping")
                data = loaded
            else:
                logger.debug("[Config] Config file not found: %s", path)

        config = cls.from_dict(data)
        if use_env:
            config.apply_env()
        return config

    @classmethod
    def from_env(cls) -> "EmbedConfig":
        """Defaults plus environment overrides."""
        config = cls()
        config.apply_env()
        return config

    def apply_env(self) -> None:
        """Apply ``UIEMBED_*`` environment variables in place."""

        def _str(name: str) -> Optional[str]:
            raw = os.getenv(name, "").strip()
            return raw or None

        def _int(name: str, default: int) -> int:
            raw = _str(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                logger.warning("[Config] %s is not an integer: %r", name, raw)
                return default

        def _float(name: str, default: float) -> float:
            raw = _str(name)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError:
                logger.warning("[Config] %s is not a number: %r", name, raw)
                return default

        self.log_level = _str("UIEMBED_LOG_LEVEL") or self.log_level
        self.log_file = _str("UIEMBED_LOG_FILE") or self.log_file
        self.trace_path = _str("UIEMBED_TRACE") or self.trace_path
        self.socket_dir = _str("UIEMBED_SOCKET_DIR") or self.socket_dir
        self.read_chunk_size = _int("UIEMBED_READ_CHUNK", self.read_chunk_size)
        self.max_buffer_size = _int("UIEMBED_MAX_BUFFER", self.max_buffer_size)
        self.terminate_timeout = _float("UIEMBED_TERMINATE_TIMEOUT_S", self.terminate_timeout)
        self._coerce()

    def _coerce(self) -> None:
        self.log_level = str(self.log_level).upper()
        self.read_chunk_size = max(1, int(self.read_chunk_size))
        self.max_buffer_size = max(1024, int(self.max_buffer_size))
        self.terminate_timeout = max(0.0, float(self.terminate_timeout))
