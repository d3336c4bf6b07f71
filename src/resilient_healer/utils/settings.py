import logging
from pathlib import Path
from typing import Optional, Union

from .config_types import Settings
from .configuration import ConfigurationManager

logger = logging.getLogger(__name__)


# --- Global Configuration Manager Instance ---
_config_manager_instance: Optional[ConfigurationManager] = None


def get_config_manager(
    config_file: Optional[Union[str, Path]] = None, force_reload: bool = False
) -> ConfigurationManager:
    """
    Get the global ConfigurationManager instance, initializing or reloading as needed.

    Args:
        config_file: Optional path to a specific config file. Ignored with a
                     warning when an instance already exists and
                     force_reload is False.
        force_reload: If True, re-initialize and reload from all sources.
    """
    global _config_manager_instance

    if _config_manager_instance is None or force_reload:
        logger.debug(
            f"Initializing ConfigurationManager (force_reload={force_reload})."
        )
        _config_manager_instance = ConfigurationManager(
            settings_cls=Settings, config_file_path=config_file
        )
        _config_manager_instance.load_config(force_reload=force_reload)
    elif config_file is not None:
        logger.warning(
            f"get_config_manager called with config_file='{config_file}' but "
            f"force_reload=False. Returning the existing manager instance."
        )

    return _config_manager_instance


def load_settings(
    config_file: Optional[Union[str, Path]] = None,
    force_reload: bool = False,
    debug: bool = False,
) -> Settings:
    """
    Load settings using the singleton ConfigurationManager.

    Raises:
        ConfigurationError: If the merged configuration is invalid.
    """
    manager = get_config_manager(config_file=config_file, force_reload=force_reload)
    overrides = {"log_level": "DEBUG"} if debug else None
    return manager.get_settings(overrides=overrides)
