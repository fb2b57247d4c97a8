"""
Configuration file support for hurdlekit analyses.

Supports YAML and JSON config files. Explicit keyword arguments passed to
the analysis functions always override config values, which in turn
override the dataclass defaults.

Example config (YAML):

    fit:
      detection_threshold: 0.0
      n_workers: 4
    bootstrap:
      n_replicates: 100
      seed: 20240117
    enrichment:
      min_size: 5
      weights: [1.0, 1.0]
      fdr_method: BH
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from hurdlekit.core.exceptions import ConfigurationError

__all__ = [
    'FitConfig',
    'BootstrapConfig',
    'EnrichmentConfig',
    'HurdleConfig',
    'load_config',
    'validate_config',
]

FDR_METHODS = ('BH', 'BY', 'bonferroni')


@dataclass
class FitConfig:
    """Per-feature hurdle fitting configuration."""
    detection_threshold: float = 0.0
    n_workers: int = 1


@dataclass
class BootstrapConfig:
    """Bootstrap resampling configuration."""
    n_replicates: int = 100
    seed: Optional[int] = None
    n_workers: int = 1


@dataclass
class EnrichmentConfig:
    """Gene-set enrichment configuration."""
    min_size: int = 5
    weights: Tuple[float, float] = (1.0, 1.0)
    fdr_method: str = 'BH'


@dataclass
class HurdleConfig:
    """
    Complete configuration schema.

    Sections mirror the analysis stages: fit, bootstrap, enrichment.
    """
    fit: FitConfig = field(default_factory=FitConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'HurdleConfig':
        """Build a validated config from a nested dictionary."""
        validate_config(config)
        enrichment = dict(config.get('enrichment') or {})
        if 'weights' in enrichment:
            enrichment['weights'] = tuple(float(w) for w in enrichment['weights'])
        return cls(
            fit=FitConfig(**(config.get('fit') or {})),
            bootstrap=BootstrapConfig(**(config.get('bootstrap') or {})),
            enrichment=EnrichmentConfig(**enrichment),
        )

    @classmethod
    def from_file(cls, config_path: Path | str) -> 'HurdleConfig':
        """Load and validate a YAML or JSON config file."""
        return cls.from_dict(load_config(Path(config_path)))

    def to_dict(self) -> Dict[str, Any]:
        config = asdict(self)
        config['enrichment']['weights'] = list(config['enrichment']['weights'])
        return config


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> print(config['bootstrap']['n_replicates'])
        100
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ConfigurationError("Config file must contain a dictionary/mapping at top level")

    return config


def _check_keys(section: str, values: Any, allowed: type) -> None:
    if not isinstance(values, dict):
        raise ConfigurationError(f"Config section '{section}' must be a mapping")
    known = set(allowed.__dataclass_fields__)
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{section}': {sorted(unknown)}. Choose from: {sorted(known)}"
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Parameters:
        config: Configuration dictionary

    Raises:
        ConfigurationError: If configuration is invalid
    """
    sections = {'fit': FitConfig, 'bootstrap': BootstrapConfig, 'enrichment': EnrichmentConfig}
    unknown = set(config) - set(sections)
    if unknown:
        raise ConfigurationError(
            f"Unknown config sections: {sorted(unknown)}. Choose from: {sorted(sections)}"
        )
    for name, schema in sections.items():
        if config.get(name) is not None:
            _check_keys(name, config[name], schema)

    fit = config.get('fit') or {}
    if 'detection_threshold' in fit and not _is_number(fit['detection_threshold']):
        raise ConfigurationError(
            f"fit.detection_threshold must be a number, got: {fit['detection_threshold']}"
        )
    if 'n_workers' in fit and (not isinstance(fit['n_workers'], int) or fit['n_workers'] < 1):
        raise ConfigurationError(f"fit.n_workers must be a positive integer, got: {fit['n_workers']}")

    bootstrap = config.get('bootstrap') or {}
    if 'n_replicates' in bootstrap:
        n_rep = bootstrap['n_replicates']
        if not isinstance(n_rep, int) or isinstance(n_rep, bool) or n_rep < 1:
            raise ConfigurationError(
                f"bootstrap.n_replicates must be a positive integer, got: {n_rep}"
            )
    if bootstrap.get('seed') is not None and not isinstance(bootstrap['seed'], int):
        raise ConfigurationError(f"bootstrap.seed must be an integer, got: {bootstrap['seed']}")
    if 'n_workers' in bootstrap and (
        not isinstance(bootstrap['n_workers'], int) or bootstrap['n_workers'] < 1
    ):
        raise ConfigurationError(
            f"bootstrap.n_workers must be a positive integer, got: {bootstrap['n_workers']}"
        )

    enrichment = config.get('enrichment') or {}
    if 'min_size' in enrichment and (
        not isinstance(enrichment['min_size'], int) or enrichment['min_size'] < 1
    ):
        raise ConfigurationError(
            f"enrichment.min_size must be a positive integer, got: {enrichment['min_size']}"
        )
    if 'weights' in enrichment:
        weights = enrichment['weights']
        if (
            not isinstance(weights, (list, tuple))
            or len(weights) != 2
            or not all(_is_number(w) and w >= 0 for w in weights)
            or not any(w > 0 for w in weights)
        ):
            raise ConfigurationError(
                f"enrichment.weights must be two non-negative numbers, not both zero, got: {weights}"
            )
    if 'fdr_method' in enrichment and enrichment['fdr_method'] not in FDR_METHODS:
        raise ConfigurationError(
            f"Invalid fdr_method '{enrichment['fdr_method']}'. "
            f"Choose from: {', '.join(FDR_METHODS)}"
        )
