import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from ..core.errors import ConfigurationError
from .config_types import Settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _deep_merge(source: Dict[str, Any], destination: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deeply merge two dictionaries. `source` is merged into `destination`.
    """
    for key, value in source.items():
        if (
            isinstance(value, dict)
            and key in destination
            and isinstance(destination[key], dict)
        ):
            destination[key] = _deep_merge(value, destination[key])
        else:
            destination[key] = value
    return destination


def _nested_model(annotation: Any) -> Optional[Type[BaseModel]]:
    """Return the BaseModel class behind a (possibly Optional) annotation."""
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    for arg in getattr(annotation, "__args__", ()):
        if isinstance(arg, type) and issubclass(arg, BaseModel):
            return arg
    return None


def build_settings(
    model_cls: Type[ModelT],
    base: Optional[ModelT] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ModelT:
    """
    Validate ``overrides`` on top of ``base`` (or the model defaults).

    Invalid values are never clamped: a validation failure is raised as
    ConfigurationError so a misconfigured component fails at construction.
    """
    data = base.model_dump() if base is not None else {}
    if overrides:
        data = _deep_merge(dict(overrides), data)
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        logger.error(f"Invalid {model_cls.__name__}: {e}")
        raise ConfigurationError(
            f"Invalid {model_cls.__name__}",
            context={"overrides": overrides or {}},
            original_exception=e,
        ) from e


class ConfigurationManager:
    """
    Manages loading configuration settings from multiple sources using Pydantic.

    Handles hierarchical loading:
    1. Default values from the Pydantic Settings model.
    2. Values from a base YAML configuration file (e.g., resilient-healer.yaml).
    3. Values from a profile-specific YAML file (e.g., resilient-healer.ci.yaml).
    4. Values from environment variables (including .env file).
    5. Runtime overrides.
    """

    DEFAULT_CONFIG_FILES = ["resilient-healer.yaml", "resilient-healer.yml"]
    ENV_PREFIX = "RESILIENT_HEALER_"

    def __init__(
        self,
        settings_cls: Type[Settings] = Settings,
        config_file_path: Optional[Union[str, Path]] = None,
        env_prefix: str = ENV_PREFIX,
        dotenv_path: Optional[Union[str, Path]] = None,
        load_dotenv_flag: bool = True,
    ):
        """
        Initialize the ConfigurationManager.

        Args:
            settings_cls: The Pydantic BaseModel class for settings structure.
            config_file_path: Optional path to a specific configuration file.
                               If None, searches for default files.
            env_prefix: Prefix for environment variables.
            dotenv_path: Optional path to a .env file to load.
            load_dotenv_flag: If True, load .env file on initialization.
        """
        if not issubclass(settings_cls, BaseModel):
            raise TypeError(f"{settings_cls.__name__} must be a Pydantic BaseModel.")

        self.settings_cls: Type[Settings] = settings_cls
        self.env_prefix: str = env_prefix
        self.dotenv_path: Optional[Union[str, Path]] = dotenv_path
        self._dotenv_loaded: bool = False
        self.profile: Optional[str] = os.getenv(f"{self.env_prefix}PROFILE")
        self._original_config_file_path = config_file_path
        self._config_file_path: Optional[Path] = self._resolve_config_file_path(
            config_file_path
        )
        self._config: Dict[str, Any] = {}
        self._loaded: bool = False
        self._settings_instance: Optional[Settings] = None

        if load_dotenv_flag:
            self._load_dotenv()

    def _load_dotenv(self) -> None:
        """Load environment variables from a .env file using python-dotenv."""
        if self._dotenv_loaded:
            return
        dotenv_path = self.dotenv_path
        if dotenv_path is None:
            for path in (Path.cwd() / ".env", Path.cwd().parent / ".env"):
                if path.is_file():
                    dotenv_path = path
                    break
        if dotenv_path and Path(dotenv_path).is_file():
            load_dotenv(dotenv_path, override=False)
            logger.info(f"Loaded environment variables from .env file: {dotenv_path}")
            self._dotenv_loaded = True
        else:
            logger.debug("No .env file found to load.")

    def reload(self) -> None:
        """Reload the configuration from all sources, including the .env file."""
        self._dotenv_loaded = False
        self._settings_instance = None
        self.profile = os.getenv(f"{self.env_prefix}PROFILE")
        self._config_file_path = self._resolve_config_file_path(
            self._original_config_file_path
        )
        self._load_dotenv()
        self.load_config(force_reload=True)

    def _resolve_config_file_path(
        self, specific_path: Optional[Union[str, Path]]
    ) -> Optional[Path]:
        """Find the configuration file path."""
        if specific_path:
            p = Path(specific_path)
            if p.is_file():
                logger.debug(f"Using specified configuration file: {p}")
                return p
            logger.warning(f"Specified configuration file not found: {specific_path}")

        search_paths: List[Path] = []
        current = Path.cwd()
        home = Path.home()
        while True:
            search_paths.extend(current / name for name in self.DEFAULT_CONFIG_FILES)
            if current == current.parent or current == home:
                break
            current = current.parent

        for path in search_paths:
            try:
                resolved_path = path.resolve()
                if resolved_path.is_file():
                    logger.debug(f"Found configuration file: {resolved_path}")
                    return resolved_path
            except OSError as e:
                logger.debug(f"Could not access potential config file {path}: {e}")

        logger.debug("No configuration file found in standard locations.")
        return None

    def load_config(self, force_reload: bool = False) -> None:
        """Load configuration from all sources."""
        if self._loaded and not force_reload:
            return

        self._config = {}
        self._settings_instance = None

        defaults = self.settings_cls().model_dump()
        file_config = self._load_from_file()
        env_config = self._load_from_env()

        # Merge with precedence: defaults < file < env
        self._config = defaults
        _deep_merge(file_config, self._config)
        _deep_merge(env_config, self._config)

        self._loaded = True
        logger.debug("Configuration loaded successfully.")

    def _load_single_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """Load configuration from a single YAML file."""
        try:
            with open(file_path, "r") as f:
                file_config = yaml.safe_load(f)
        except FileNotFoundError:
            logger.debug(f"Configuration file not found: {file_path}")
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file {file_path}: {e}")
            raise ConfigurationError(
                f"Invalid YAML format in {file_path}", original_exception=e
            ) from e
        except OSError as e:
            logger.error(f"Error reading configuration file {file_path}: {e}")
            raise ConfigurationError(
                f"Could not read file {file_path}", original_exception=e
            ) from e

        if file_config and isinstance(file_config, dict):
            logger.info(f"Loaded configuration from file: {file_path}")
            return file_config
        if file_config is not None:
            logger.warning(
                f"Configuration file {file_path} does not contain a dictionary."
            )
        return {}

    def _load_from_file(self) -> Dict[str, Any]:
        """Load configuration from base and profile-specific YAML files."""
        config: Dict[str, Any] = {}
        if self._config_file_path:
            config = self._load_single_yaml_file(self._config_file_path)

        if self.profile and self._config_file_path:
            profile_path = self._config_file_path.with_name(
                f"{self._config_file_path.stem}.{self.profile}{self._config_file_path.suffix}"
            )
            if profile_path.is_file():
                _deep_merge(self._load_single_yaml_file(profile_path), config)
            else:
                logger.debug(f"Profile config file not found: {profile_path}")

        return config

    def _load_from_env(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        ``RESILIENT_HEALER_RETRY_MAX_RETRIES`` maps to ``retry.max_retries`` and
        ``RESILIENT_HEALER_COST_PRICING_MODEL`` to ``cost.pricing.model``.
        """
        env_config: Dict[str, Any] = {}
        model_fields = self.settings_cls.model_fields

        for env_var, value in os.environ.items():
            if not env_var.startswith(self.env_prefix):
                continue

            key_str = env_var[len(self.env_prefix) :].lower()
            if key_str in model_fields:
                self._set_env_value(
                    env_config, [key_str], model_fields[key_str].annotation, value, env_var
                )
                continue

            parts = key_str.split("_")
            nested_cls = None
            top_level_key = None
            for i in range(1, len(parts)):
                candidate = "_".join(parts[:i])
                if candidate in model_fields:
                    nested_cls = _nested_model(model_fields[candidate].annotation)
                    top_level_key = candidate
                    remaining = parts[i:]
                    break
            if nested_cls is None or top_level_key is None:
                continue

            field_name = "_".join(remaining)
            if field_name in nested_cls.model_fields:
                self._set_env_value(
                    env_config,
                    [top_level_key, field_name],
                    nested_cls.model_fields[field_name].annotation,
                    value,
                    env_var,
                )
                continue

            # Two levels deep, e.g. cost_pricing_model
            second_cls = None
            for j in range(1, len(remaining)):
                second_key = "_".join(remaining[:j])
                field = nested_cls.model_fields.get(second_key)
                second_cls = _nested_model(field.annotation) if field else None
                if second_cls is not None:
                    third_key = "_".join(remaining[j:])
                    if third_key in second_cls.model_fields:
                        self._set_env_value(
                            env_config,
                            [top_level_key, second_key, third_key],
                            second_cls.model_fields[third_key].annotation,
                            value,
                            env_var,
                        )
                    break
            if second_cls is None:
                logger.debug(f"Ignoring unrecognized env var '{env_var}'.")
        return env_config

    def _set_env_value(
        self,
        env_config: Dict[str, Any],
        path: List[str],
        target_type: Any,
        value: str,
        env_var: str,
    ) -> None:
        try:
            typed_value = self._convert_type(value, target_type)
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not convert env var {env_var}: {e}")
            return
        target = env_config
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = typed_value
        logger.debug(f"Loaded env var '{env_var}' as '{'.'.join(path)}'.")

    def _convert_type(self, value: str, target_type: Any) -> Any:
        """Convert string value to the target type."""
        origin_type = getattr(target_type, "__origin__", None)
        args = getattr(target_type, "__args__", [])

        if target_type is bool:
            return value.lower() in ("true", "1", "yes", "y", "on")
        elif target_type is int:
            return int(value)
        elif target_type is float:
            return float(value)
        elif target_type is Path:
            return Path(value)
        elif target_type is str:
            return value
        elif origin_type is Union and type(None) in args:
            non_none_type = next((t for t in args if t is not type(None)), str)
            return self._convert_type(value, non_none_type)
        elif origin_type is list or target_type is List:
            element_type = args[0] if args else str
            return [
                self._convert_type(item.strip(), element_type)
                for item in value.split(",")
                if item.strip()
            ]

        try:
            return target_type(value)
        except (ValueError, TypeError):
            raise TypeError(
                f"Unsupported type conversion for {target_type} from string."
            )

    def get_settings(self, overrides: Optional[Dict[str, Any]] = None) -> Settings:
        """
        Return the final configuration as a validated Pydantic Settings object.

        Args:
            overrides: A dictionary of settings to apply on top of all other sources.

        Raises:
            ConfigurationError: If the merged configuration fails validation.
        """
        if overrides is None and self._settings_instance is not None:
            return self._settings_instance

        if not self._loaded:
            self.load_config()

        final_config = json.loads(json.dumps(self._config, default=str))
        if overrides:
            final_config = _deep_merge(overrides, final_config)

        try:
            instance = self.settings_cls.model_validate(final_config)
        except ValidationError as e:
            logger.error(f"Failed to validate final configuration: {e}")
            raise ConfigurationError(
                "Configuration validation failed", original_exception=e
            ) from e

        if overrides is None:
            self._settings_instance = instance
        logger.debug("Created settings instance from loaded configuration.")
        return instance

    def export_schema_json(self, path: Union[str, Path], indent: int = 2) -> None:
        """Export the Pydantic model schema to a JSON file."""
        schema = self.settings_cls.model_json_schema()
        try:
            with open(path, "w") as f:
                json.dump(schema, f, indent=indent)
            logger.info(f"Configuration schema exported successfully to {path}")
        except OSError as e:
            logger.error(f"Failed to write schema to {path}: {e}")
            raise ConfigurationError(
                f"Could not write schema file: {e}", original_exception=e
            ) from e
