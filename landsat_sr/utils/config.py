"""
Configuration management for landsat_sr.

Settings are layered, later layers winning:
    1. DEFAULT_CONFIG below
    2. the first YAML file found (see config_search_paths)
    3. LANDSAT_SR_* environment variables

The memory limit is auto-detected from the machine when left unset.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
import yaml

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'

# Fraction of physical memory used when memory.limit_gb is unset
AUTO_MEMORY_FRACTION = 0.8

DEFAULT_CONFIG = {
    'memory': {
        'limit_gb': None,
        'chunk_size_mb': 256,
    },

    # Scene-level atmosphere used by the constant-AOT pass
    'atmospheric': {
        'default_aot550': 0.05,
    },

    'retrieval': {
        'acceptance_base': 0.015,
        'acceptance_slope': 0.005,
        'water_ndvi_threshold': 0.1,
        'band5_min': 0.1,
        'band1_guard': -0.01,
        'fallback_aot': 0.05,
        'negative_band1_threshold': -0.005,
    },

    'cloud': {
        'cloud_factor': 6.0,              # K per km lapse rate for cloud height
        'adjacency_radius': 5,            # 11x11 window
        'shadow_expansion_radius': 6,     # 13x13 window
        'fallback_clear_temperature': 275.0,
    },

    'gap_fill': {
        'initial_block': 10,
        'max_block': 1000,
    },

    'logging': {
        'level': 'INFO',
        'format': LOG_FORMAT,
    },
}

# env var -> (section, key, type)
ENV_OVERRIDES = {
    'LANDSAT_SR_MEMORY_LIMIT': ('memory', 'limit_gb', float),
    'LANDSAT_SR_CHUNK_MB': ('memory', 'chunk_size_mb', int),
    'LANDSAT_SR_LOG_LEVEL': ('logging', 'level', str),
}


def config_search_paths() -> List[Path]:
    """YAML locations in lookup order; $LANDSAT_SR_CONFIG comes first when set."""
    explicit = os.environ.get('LANDSAT_SR_CONFIG')
    paths = [Path(explicit)] if explicit else []
    return paths + [
        Path.home() / '.landsat_sr' / 'config.yaml',
        Path.home() / '.config' / 'landsat_sr' / 'config.yaml',
        Path.cwd() / 'landsat_sr.yaml',
    ]


def _deep_merge(target: Dict, overrides: Dict, prefix: str = ''):
    """Merge overrides into target in place, warning on keys it does not know."""
    for key, value in overrides.items():
        name = f"{prefix}{key}"
        if key not in target:
            logger.warning(f"Unknown config key '{name}' ignored")
        elif isinstance(target[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"Config section '{name}' must be a mapping, got {value!r}")
            _deep_merge(target[key], value, prefix=f"{name}.")
        else:
            target[key] = value


def _check(config: Dict):
    """Reject settings the processing passes cannot run with."""
    memory = config['memory']
    if memory['limit_gb'] is not None and memory['limit_gb'] <= 0:
        raise ValueError(f"memory.limit_gb must be positive, got {memory['limit_gb']}")
    if memory['chunk_size_mb'] <= 0:
        raise ValueError(f"memory.chunk_size_mb must be positive, got {memory['chunk_size_mb']}")

    cloud = config['cloud']
    if cloud['cloud_factor'] <= 0:
        raise ValueError(f"cloud.cloud_factor must be positive, got {cloud['cloud_factor']}")
    for key in ('adjacency_radius', 'shadow_expansion_radius'):
        value = cloud[key]
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValueError(f"cloud.{key} must be a non-negative integer, got {value!r}")

    gap_fill = config['gap_fill']
    if not 0 < gap_fill['initial_block'] <= gap_fill['max_block']:
        raise ValueError(f"gap_fill needs 0 < initial_block <= max_block, got {gap_fill}")


class Config:
    """
    Process-wide settings, loaded once on first access.

    Use get_config() to obtain it and reset_config() to force a reload
    (after changing the environment, for instance).
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._load()
            cls._instance = instance
        return cls._instance

    def _load(self):
        self._config: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        self.source: Optional[Path] = None

        for path in config_search_paths():
            if not path.exists():
                continue
            try:
                with open(path) as f:
                    overrides = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Skipping unreadable config {path}: {e}")
                continue
            _deep_merge(self._config, overrides)
            self.source = path
            logger.info(f"Loaded config from: {path}")
            break

        for env_var, (section, key, convert) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw is not None:
                self._config[section][key] = convert(raw)
                logger.debug(f"{env_var} sets {section}.{key} = {raw}")

        if not self._config['memory']['limit_gb']:
            total_gb = psutil.virtual_memory().total / (1024**3)
            self._config['memory']['limit_gb'] = round(total_gb * AUTO_MEMORY_FRACTION, 1)
            logger.debug(f"Memory limit set to {self._config['memory']['limit_gb']} GB "
                         f"({AUTO_MEMORY_FRACTION:.0%} of {total_gb:.1f} GB)")

        _check(self._config)

    def get(self, *keys, default=None):
        """Nested lookup, e.g. get('cloud', 'cloud_factor')."""
        node = self._config
        try:
            for key in keys:
                node = node[key]
        except (KeyError, TypeError):
            return default
        return node

    def section(self, name: str) -> Dict[str, Any]:
        """Copy of one top-level section, suitable for **kwargs."""
        return dict(self._config.get(name, {}))

    def set(self, section: str, key: str, value):
        """Change one setting (re-checked immediately)."""
        if section not in self._config:
            raise KeyError(f"Unknown config section '{section}'")
        previous = self._config[section].get(key)
        self._config[section][key] = value
        try:
            _check(self._config)
        except ValueError:
            self._config[section][key] = previous
            raise

    def save(self, path: Optional[Path] = None) -> Path:
        """Write the effective settings as YAML (default ~/.landsat_sr/config.yaml)."""
        path = Path(path) if path is not None else Path.home() / '.landsat_sr' / 'config.yaml'
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(self._config, default_flow_style=False, sort_keys=False))
        logger.info(f"Saved config to: {path}")
        return path

    @property
    def memory_limit_gb(self) -> float:
        return self._config['memory']['limit_gb']

    @property
    def chunk_size_mb(self) -> int:
        return self._config['memory']['chunk_size_mb']

    def __repr__(self):
        source = self.source or 'defaults'
        return f"Config(source={source}, sections={list(self._config)})"


def get_config() -> Config:
    """The process-wide Config."""
    return Config()


def reset_config():
    """Forget the loaded Config so the next get_config() reloads files and env."""
    Config._instance = None


def configure_logging(level: Optional[str] = None):
    """Set up root logging with the configured level and format."""
    config = get_config()
    level = level or config.get('logging', 'level', default='INFO')
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=config.get('logging', 'format', default=LOG_FORMAT),
    )
