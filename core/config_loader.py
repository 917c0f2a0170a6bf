# core/config_loader.py
import configparser
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Type

from core.constants import DEFAULT_MB_SLAVE_ID, DEFAULT_PORT, DEFAULT_SOCKET_TIMEOUT
from utils.helpers import parse_int

logger = logging.getLogger(__name__)


@dataclass
class SessionSettings:
    """Connection parameters for a single data logging stick."""
    address: Optional[str] = None
    serial: Optional[int] = None
    port: int = DEFAULT_PORT
    mb_slave_id: int = DEFAULT_MB_SLAVE_ID
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT
    v5_error_correction: bool = False
    auto_reconnect: bool = False


@dataclass
class LoggingSettings:
    log_level: str = "INFO"
    log_to_file: bool = False


def load_configuration(config_path: Optional[str]) -> Tuple[SessionSettings, LoggingSettings]:
    """
    Loads configuration from a .ini file and environment variables.

    This function reads settings from the specified configuration file and then allows
    environment variables to override them. The precedence is:
    1. Environment variable (e.g., `LOGGER_ADDRESS`)
    2. Value from config file (e.g., `LOGGER_ADDRESS` in `[LOGGER]`)
    3. Default value specified in the code.

    A missing file is not an error; the CLI can still be driven entirely by
    command line flags and environment variables.

    Args:
        config_path (str): The path to the configuration file (e.g., 'config.ini').
                           ``None`` skips the file and uses environment and defaults only.

    Returns:
        A ``(SessionSettings, LoggingSettings)`` tuple.
    """
    config = configparser.ConfigParser(interpolation=None, inline_comment_prefixes=(';',))
    if config_path and os.path.exists(config_path):
        config.read(config_path, encoding='utf-8')
        logger.info(f"Successfully read configuration from {config_path}")
    elif config_path:
        logger.warning(f"Config file not found at {config_path}. Using defaults and environment variables.")

    def get_config_value(var_name: str, return_type: Type = str, default: Any = None, section: str = 'DEFAULT') -> Any:
        """
        Retrieves and converts a configuration value with environment variable override support.

        Args:
            var_name: The configuration variable name
            return_type: The expected type for conversion (str, int, float, bool)
            default: Default value if not found in env or config
            section: Configuration file section name

        Returns:
            The configuration value converted to the specified type
        """
        env_value = os.environ.get(var_name.upper())
        config_value = config.get(section, var_name, fallback=None) if config.has_option(section, var_name) else None

        value_to_cast = env_value if env_value is not None else config_value
        if value_to_cast is None:
            return default

        if isinstance(value_to_cast, str):
            value_to_cast = value_to_cast.strip().strip("'\"")
            if value_to_cast == "":
                return default

        try:
            if return_type == bool:
                return value_to_cast.lower() in ['true', '1', 'yes', 'on']
            if return_type == int:
                return parse_int(value_to_cast)
            return return_type(value_to_cast)
        except (ValueError, TypeError):
            logger.warning(f"Could not cast '{value_to_cast}' for '{var_name}' to {return_type.__name__}. Using default: {default}")
            return default

    session_settings = SessionSettings(
        address=get_config_value("LOGGER_ADDRESS", str, None, section='LOGGER'),
        serial=get_config_value("LOGGER_SERIAL", int, None, section='LOGGER'),
        port=get_config_value("LOGGER_PORT", int, DEFAULT_PORT, section='LOGGER'),
        mb_slave_id=get_config_value("MB_SLAVE_ID", int, DEFAULT_MB_SLAVE_ID, section='LOGGER'),
        socket_timeout=get_config_value("SOCKET_TIMEOUT", float, DEFAULT_SOCKET_TIMEOUT, section='LOGGER'),
        v5_error_correction=get_config_value("V5_ERROR_CORRECTION", bool, False, section='LOGGER'),
        auto_reconnect=get_config_value("AUTO_RECONNECT", bool, False, section='LOGGER'),
    )

    logging_settings = LoggingSettings(
        log_level=get_config_value("LOG_LEVEL", str, "INFO", section='LOGGING').upper(),
        log_to_file=get_config_value("LOG_TO_FILE", bool, False, section='LOGGING'),
    )

    logger.debug("Configuration loading complete.")
    return session_settings, logging_settings
