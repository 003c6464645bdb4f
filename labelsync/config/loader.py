"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from labelsync.clients.exceptions import ConfigurationError
from labelsync.config.models import LabelsyncConfig


class SecurityError(ConfigurationError):
    """Raised when security validation fails."""
    pass


class EnvironmentVariableError(ConfigurationError):
    """Raised when environment variable substitution fails."""
    pass


# Only variables with these prefixes, or the names below, may be substituted
ALLOWED_ENV_PREFIXES: Tuple[str, ...] = ("LABELSYNC_", "GMAIL_", "OUTLOOK_", "TENANT_")

ALLOWED_ENV_VARS = frozenset({
    "LOG_LEVEL",
    "LOG_FORMAT",
    "STATE_DIR",
    "AUDIT_DIR",
    "HOME",
    "USER",
    "PWD",
    "TMPDIR",
})

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Characters that would change YAML structure if substituted verbatim
_DANGEROUS_CHARS = ("${", "#{", "&", "*", "!", "|", ">", "'", '"', "`", "\n")


def _validate_env_var_name(var_name: str) -> None:
    """Check an environment variable against the allowlist.

    Raises:
        SecurityError: If the variable may not be referenced from configuration
    """
    if not _ENV_NAME.match(var_name):
        raise SecurityError(f"Invalid environment variable name format: '{var_name}'")

    if var_name not in ALLOWED_ENV_VARS and not var_name.startswith(ALLOWED_ENV_PREFIXES):
        raise SecurityError(
            f"Unauthorized environment variable '{var_name}' is not in allowlist. "
            f"Allowed prefixes: {', '.join(ALLOWED_ENV_PREFIXES)}"
        )


def _sanitize_env_value(value: str) -> str:
    """Reject values that would inject YAML syntax."""
    sanitized = value.strip()
    for char in _DANGEROUS_CHARS:
        if char in sanitized:
            raise SecurityError(
                f"Environment variable contains potentially dangerous character {char!r}. "
                "Values with special YAML characters are not allowed."
            )
    return sanitized


class ConfigLoader:
    """Configuration loader with environment variable substitution."""

    # ${VAR_NAME} or ${VAR_NAME:default_value}
    ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*?)(?::([^}]*))?\}")

    def __init__(self, require_env_vars: bool = True, env_file: Optional[Path] = None) -> None:
        """Initialize the configuration loader.

        Args:
            require_env_vars: Whether every referenced variable must resolve
            env_file: Optional .env file (defaults to one beside the config file)
        """
        self.require_env_vars = require_env_vars
        self.env_file = env_file

    def load_config(self, config_path: Path) -> LabelsyncConfig:
        """Load and validate configuration from a YAML file.

        Raises:
            ConfigurationError: If loading or validation fails
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        env_file = self.env_file or config_path.parent / ".env"
        if env_file.exists():
            # Existing process environment wins over the file
            load_dotenv(env_file, override=False)

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration: {e}") from e

        substituted_content = self._substitute_env_vars(raw_content)

        try:
            config_data = yaml.safe_load(substituted_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

        if config_data is None:
            config_data = {}
        if not isinstance(config_data, dict):
            raise ConfigurationError("Configuration file must contain a YAML object")

        return load_config_from_dict(config_data)

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ``${VAR}`` and ``${VAR:default}`` references.

        Raises:
            SecurityError: If a reference is not allowlisted or its value is unsafe
            EnvironmentVariableError: If a required variable is missing
        """
        missing_vars = []
        security_errors = []

        def replace_env_var(match: "re.Match[str]") -> str:
            var_name = match.group(1)
            default_value = match.group(2)

            try:
                _validate_env_var_name(var_name)
                env_value = os.getenv(var_name)
                if env_value is not None:
                    return _sanitize_env_value(env_value)
                if default_value is not None:
                    return _sanitize_env_value(default_value)
            except SecurityError as e:
                security_errors.append(str(e))
                return match.group(0)

            if self.require_env_vars:
                missing_vars.append(var_name)
            return match.group(0)

        result = self.ENV_VAR_PATTERN.sub(replace_env_var, content)

        if security_errors:
            raise SecurityError(f"Security validation failed: {'; '.join(security_errors)}")

        if missing_vars:
            if len(missing_vars) == 1:
                raise EnvironmentVariableError(
                    f"Required environment variable '{missing_vars[0]}' is not set"
                )
            raise EnvironmentVariableError(
                f"Required environment variables are not set: {', '.join(sorted(set(missing_vars)))}"
            )

        return result

    def validate_config_file(self, config_path: Path) -> Tuple[bool, Optional[str]]:
        """Validate a configuration file.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            self.load_config(config_path)
            return True, None
        except ConfigurationError as e:
            return False, str(e)

    def get_missing_env_vars(self, config_path: Path) -> list[str]:
        """Referenced variables that have no default and are not set."""
        config_path = Path(config_path)
        if not config_path.exists():
            return []

        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()

        missing_vars = set()
        for match in self.ENV_VAR_PATTERN.finditer(content):
            var_name, default_value = match.group(1), match.group(2)
            if default_value is None and os.getenv(var_name) is None:
                missing_vars.add(var_name)
        return sorted(missing_vars)


def load_config_from_path(config_path: Path, require_env_vars: bool = True) -> LabelsyncConfig:
    """Convenience function to load configuration from path."""
    return ConfigLoader(require_env_vars=require_env_vars).load_config(config_path)


def load_config_from_dict(config_data: Dict[str, Any]) -> LabelsyncConfig:
    """Load configuration from a dictionary.

    Raises:
        ConfigurationError: If validation fails
    """
    try:
        return LabelsyncConfig.model_validate(config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e


def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """Find a configuration file by searching up the directory tree.

    Searches for labelsync.yaml, labelsync.yml, config.yaml and config.yml,
    in that order, in each directory.
    """
    if start_path is None:
        start_path = Path.cwd()

    config_filenames = [
        "labelsync.yaml",
        "labelsync.yml",
        "config.yaml",
        "config.yml",
    ]

    current_path = Path(start_path).resolve()
    while True:
        for filename in config_filenames:
            config_path = current_path / filename
            if config_path.exists():
                return config_path

        parent = current_path.parent
        if parent == current_path:
            break
        current_path = parent

    return None
