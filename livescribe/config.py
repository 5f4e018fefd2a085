"""
Configuration for LiveScribe.

The configuration is read once at startup into an ``AppConfig`` object and
handed to each component that needs it. Values on disk are merged over
``DEFAULT_CONFIG`` so that missing keys fall back to their defaults.

Example:
    >>> config = AppConfig.load()
    >>> config.streaming.interval_s
    0.5
"""

import copy
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Default configuration file path
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "livescribe" / "config.json"

# Default location of downloaded models
DEFAULT_MODELS_DIR = Path.home() / ".local" / "share" / "livescribe" / "models"

# Environment variable overriding the models directory
MODELS_DIR_ENV = "LIVESCRIBE_MODELS_DIR"

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    "audio": {
        "device_index": None,  # None = system default input
        "blocksize": 4096,
        "level_gain": 5.0,
        "level_poll_hz": 30.0,
    },
    "transcription": {
        "model": "base",
        "language": "auto",
        "device": "cpu",
        "compute_type": "int8",
        "models_dir": None,
    },
    "streaming": {
        "enabled": True,
        "interval_s": 0.5,
        "min_initial_samples": 24000,  # 1.5s at 16kHz
        "min_new_samples": 8000,  # 0.5s at 16kHz
    },
    "retry": {
        "max_attempts": 3,
        "initial_delay": 1.0,
    },
}


@dataclass
class AudioConfig:
    device_index: Optional[int] = None
    blocksize: int = 4096
    level_gain: float = 5.0
    level_poll_hz: float = 30.0


@dataclass
class TranscriptionConfig:
    model: str = "base"
    language: str = "auto"
    device: str = "cpu"
    compute_type: str = "int8"
    models_dir: Optional[str] = None

    def resolve_models_dir(self) -> Path:
        """Return the directory holding downloaded models."""
        env_dir = os.environ.get(MODELS_DIR_ENV)
        if env_dir:
            return Path(env_dir).expanduser()
        if self.models_dir:
            return Path(self.models_dir).expanduser()
        return DEFAULT_MODELS_DIR


@dataclass
class StreamingConfig:
    enabled: bool = True
    interval_s: float = 0.5
    min_initial_samples: int = 24000
    min_new_samples: int = 8000


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0


@dataclass
class AppConfig:
    """
    Complete application configuration.

    Attributes:
        audio: Capture device and level metering settings.
        transcription: Model, language and compute settings.
        streaming: Cadence and gating of streaming passes.
        retry: Retry policy for fallible operations.
    """

    audio: AudioConfig = field(default_factory=AudioConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """
        Build a configuration from a (possibly partial) dictionary.

        Unknown keys are ignored with a warning.

        Raises:
            ConfigurationError: If a section is not a mapping or holds
                values of the wrong shape.
        """
        merged = merge_config(DEFAULT_CONFIG, data)
        sections = {
            "audio": AudioConfig,
            "transcription": TranscriptionConfig,
            "streaming": StreamingConfig,
            "retry": RetryConfig,
        }
        kwargs: Dict[str, Any] = {}
        for name, section_type in sections.items():
            values = merged.get(name)
            if not isinstance(values, dict):
                raise ConfigurationError(f"Config section '{name}' must be an object")
            known = set(section_type.__dataclass_fields__)
            unknown = set(values) - known
            if unknown:
                logger.warning(f"Ignoring unknown keys in '{name}': {sorted(unknown)}")
            try:
                kwargs[name] = section_type(**{k: v for k, v in values.items() if k in known})
            except TypeError as e:
                raise ConfigurationError(f"Invalid config section '{name}': {e}") from e
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "AppConfig":
        """
        Load configuration from a JSON file.

        A missing file yields the defaults.

        Args:
            config_path: Path to the config file. Defaults to
                ~/.config/livescribe/config.json.

        Raises:
            ConfigurationError: If the file cannot be read or parsed.
        """
        path = config_path or DEFAULT_CONFIG_PATH

        if not path.exists():
            logger.debug(f"No config file at {path}, using defaults")
            return cls.from_dict({})

        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded_config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file: {e}") from e

        if not isinstance(loaded_config, dict):
            raise ConfigurationError("Config file must contain a JSON object")

        config = cls.from_dict(loaded_config)
        logger.info(f"Configuration loaded from {path}")
        return config

    def save(self, config_path: Optional[Path] = None) -> None:
        """
        Save the configuration to a JSON file.

        Creates the parent directory if it doesn't exist.

        Raises:
            ConfigurationError: If the file cannot be written.
        """
        path = config_path or DEFAULT_CONFIG_PATH

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
            logger.info(f"Configuration saved to {path}")
        except OSError as e:
            raise ConfigurationError(f"Failed to save config file: {e}") from e


def merge_config(default: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge loaded configuration with defaults.

    Values from the loaded config override defaults. For nested
    dictionaries, merging is performed recursively. Neither input is
    modified.
    """
    result = copy.deepcopy(default)

    for key, value in loaded.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value

    return result
