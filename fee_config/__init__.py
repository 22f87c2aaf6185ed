"""
fee_config -- single public entrypoint for fee configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a ``FeeConfigurationSet`` holding the
    engine ``FeePolicy`` and the configured fee packages.

Architecture position:
    Configuration -- YAML-driven, parsed into frozen dataclasses.
    This package sits above ``fee_kernel``.  Neither the kernel nor the
    engines import ``fee_config``; callers pass the policy and package
    rules into the engines explicitly.

Invariants enforced:
    - Same YAML always produces the same ``FeeConfigurationSet`` checksum.
    - Rule priorities are unique within a package.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``KeyError`` / ``ValueError`` -- structural validation failures.
    - ``FeeConfigurationError`` subclasses -- unknown rule enums.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``FEE_CONFIG_TRACE`` log entry with the config id, version, checksum
    and package count.
"""

from __future__ import annotations

from pathlib import Path

from fee_config.loader import load_yaml_file, parse_configuration
from fee_config.schema import FeeConfigurationSet, FeePackageDefinition
from fee_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | None = None) -> FeeConfigurationSet:
    """Load and return the active fee configuration.

    Args:
        config_path: Override path to a configuration YAML file.
            Defaults to fee_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        KeyError: If a required key is missing.
        ValueError: If the configuration is structurally invalid.
    """
    path = config_path or _DEFAULT_CONFIG_PATH
    config = parse_configuration(load_yaml_file(path))

    _logger.info(
        "FEE_CONFIG_TRACE",
        extra={
            "trace_type": "FEE_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "checksum": config.checksum,
            "package_count": len(config.packages),
            "distribute_field": config.policy.distribute_field,
        },
    )
    return config


__all__ = [
    "FeeConfigurationSet",
    "FeePackageDefinition",
    "get_active_config",
]
