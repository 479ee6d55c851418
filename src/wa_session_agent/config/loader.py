"""
Session Agent Configuration Loader

Loads configuration from YAML files with environment variable interpolation.

Environment Variable Interpolation:
- ${VAR_NAME} - Required variable, raises error if not set
- ${VAR_NAME:-default} - Optional variable with default value

Example:
```yaml
bridge:
  http_url: "${BRIDGE_HTTP_URL:-http://localhost:3000}"
pairing:
  method: numeric
  phone_number: "${BOT_PHONE_NUMBER}"
```
"""

import os
import re
from pathlib import Path
from typing import Any, Optional, Union
import logging

import yaml

from .schema import AgentConfig

logger = logging.getLogger(__name__)

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')

CONFIG_FILENAME = "agent.yaml"


def interpolate_env_vars(value: Any) -> Any:
    """
    Recursively substitute environment variables in parsed YAML values.

    Raises:
        KeyError: A required variable (no default) is not set
    """
    if isinstance(value, str):
        def replace_env_var(match):
            var_name = match.group(1)
            default_value = match.group(2)

            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default_value is not None:
                return default_value
            raise KeyError(
                f"Environment variable '{var_name}' is required but not set. "
                f"Set it or provide a default: ${{{var_name}:-default}}"
            )

        return ENV_VAR_PATTERN.sub(replace_env_var, value)

    if isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]

    return value


def load_config_from_file(
    config_path: Union[str, Path],
    interpolate: bool = True
) -> AgentConfig:
    """
    Load agent configuration from a YAML file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        KeyError: If required environment variable is not set
        ValueError: If the document is not a mapping or fails validation
        yaml.YAMLError: If YAML is malformed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    with open(config_path, 'r') as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raw_config = {}

    if not isinstance(raw_config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    if interpolate:
        try:
            raw_config = interpolate_env_vars(raw_config)
        except KeyError as e:
            logger.error(f"Configuration error: {e}")
            raise

    # Relative session paths resolve against the config file's directory
    if "working_dir" not in raw_config:
        raw_config["working_dir"] = str(config_path.parent.absolute())

    config = AgentConfig.from_dict(raw_config)

    is_valid, errors = config.validate()
    if not is_valid:
        error_msg = "Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise ValueError(error_msg)

    return config


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    working_dir: Optional[Union[str, Path]] = None,
) -> AgentConfig:
    """
    Load agent configuration with sensible defaults.

    Search order for configuration:
    1. Explicit config_path if provided
    2. $WA_AGENT_CONFIG
    3. agent.yaml (or config/agent.yaml) in working_dir
    4. agent.yaml (or config/agent.yaml) in current directory
    5. Default configuration
    """
    if config_path:
        return load_config_from_file(config_path)

    env_path = os.environ.get("WA_AGENT_CONFIG")
    if env_path:
        return load_config_from_file(env_path)

    search_paths = []

    if working_dir:
        working_dir = Path(working_dir)
        search_paths.append(working_dir / CONFIG_FILENAME)
        search_paths.append(working_dir / "config" / CONFIG_FILENAME)

    cwd = Path.cwd()
    search_paths.append(cwd / CONFIG_FILENAME)
    search_paths.append(cwd / "config" / CONFIG_FILENAME)

    for path in search_paths:
        if path.exists():
            logger.info(f"Found configuration at {path}")
            return load_config_from_file(path)

    logger.info(f"No {CONFIG_FILENAME} found, using default configuration")
    return AgentConfig(
        working_dir=Path(working_dir) if working_dir else cwd
    )


def create_default_config(output_path: Optional[Union[str, Path]] = None) -> Path:
    """
    Write a commented default agent.yaml.

    Returns:
        Path to created configuration file

    Raises:
        FileExistsError: If the target already exists
    """
    output_path = Path(output_path) if output_path else Path(CONFIG_FILENAME)

    if output_path.exists():
        raise FileExistsError(f"Refusing to overwrite existing configuration: {output_path}")

    default_config = """# Session Agent Configuration
# Environment variables can be used: ${VAR_NAME} or ${VAR_NAME:-default}

# Multi-device bridge the agent drives
bridge:
  http_url: "${BRIDGE_HTTP_URL:-http://localhost:3000}"
  ws_url: "${BRIDGE_WS_URL:-ws://localhost:3001}"
  browser: ["Session Agent", "Chrome", "3.0.0"]
  request_timeout: 60

# Persisted credentials
session:
  session_dir: ./auth_info
  # Log out of the linked device on SIGINT/SIGTERM
  logout_on_shutdown: true

# Reconnect budget and delays (seconds)
reconnect:
  max_attempts: 5
  connect_cooldown: 5
  rate_limit_cooldown: 30
  credential_reset_delay: 3
  transient_delay: 5
  timed_out_delay: 10
  restart_required_delay: 5
  unknown_delay: 5

# First-run pairing. Leave method empty to be asked interactively.
pairing:
  # method: numeric
  # phone_number: "${BOT_PHONE_NUMBER}"
  default_country_code: "55"
  # scan: pair again by scan code after credentials are discarded
  # keep: reuse the original pairing method and phone number
  after_invalidation: scan

logging:
  level: INFO
"""

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        f.write(default_config)

    logger.info(f"Created default configuration at {output_path}")
    return output_path
