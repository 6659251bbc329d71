"""
spend_config -- single public entrypoint for runtime configuration.

``get_active_config()`` reads the YAML file named by
``$SPEND_CONFIG_PATH`` or, when unset, the bundled ``defaults.yaml``.
Every load emits a ``spend_config_loaded`` trace with the checksum so
that behavior can be tied back to the exact configuration in force.
"""

from __future__ import annotations

import os
from pathlib import Path

from spend_config.loader import load_config
from spend_config.schema import ChainRuleSeed, PolicySeed, SpendConfig
from spend_kernel.logging_config import get_logger

logger = get_logger("config")

CONFIG_PATH_ENV = "SPEND_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> SpendConfig:
    """Load the active configuration.

    Resolution order: explicit ``path``, ``$SPEND_CONFIG_PATH``, bundled
    defaults.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    config = load_config(resolved)
    logger.info(
        "spend_config_loaded",
        extra={
            "path": str(resolved),
            "checksum": config.checksum,
            "tds_sections": len(config.tds_sections),
            "override_roles": sorted(config.override_roles),
        },
    )
    return config


__all__ = [
    "ChainRuleSeed",
    "PolicySeed",
    "SpendConfig",
    "get_active_config",
    "load_config",
]
