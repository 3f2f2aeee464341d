"""
YAML configuration parser with environment variable substitution.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class YAMLConfigParser:
    """YAML configuration parser with environment variable substitution."""

    def __init__(self) -> None:
        self.env_var_pattern = re.compile(r"\$\{([^}]+)\}")

    async def load_yaml_config(self, config_path: Path) -> Dict[str, Any]:
        """Load and parse YAML configuration file with environment substitution."""

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, encoding="utf-8") as f:
                yaml_content = f.read()

            substituted_content = self._substitute_environment_variables(yaml_content)
            config_data = yaml.safe_load(substituted_content) or {}

            if not isinstance(config_data, dict):
                raise ValueError("Configuration file must contain a YAML dictionary")

            logger.info(f"Loaded configuration from {config_path}")
            return config_data

        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

    async def save_yaml_config(
        self, config_data: Dict[str, Any], config_path: Path
    ) -> None:
        """Write configuration data to a YAML file atomically."""

        temp_path: Optional[Path] = None
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            header = (
                "# eCFR Analyzer configuration\n"
                "# Values may reference environment variables as ${VAR} or ${VAR:default}\n"
            )
            body = yaml.safe_dump(config_data, sort_keys=False, default_flow_style=False)

            temp_path = config_path.with_suffix(".tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(header + body)

            temp_path.replace(config_path)
            logger.info(f"Saved configuration to {config_path}")

        except OSError as e:
            if temp_path and temp_path.exists():
                temp_path.unlink(missing_ok=True)
            raise RuntimeError(f"Failed to save configuration file: {e}") from e

    def _substitute_environment_variables(self, content: str) -> str:
        """Substitute ${VAR} and ${VAR:default} references, skipping comment lines."""

        processed_lines = []

        for line in content.split("\n"):
            if line.strip().startswith("#"):
                processed_lines.append(line)
                continue

            def replace_env_var(match: Any) -> str:
                var_name = match.group(1)

                if ":" in var_name:
                    var_name, default_value = var_name.split(":", 1)
                    return os.getenv(var_name, default_value)

                env_value = os.getenv(var_name)
                if env_value is None:
                    raise ValueError(f"Environment variable '{var_name}' is not set")
                return env_value

            processed_lines.append(self.env_var_pattern.sub(replace_env_var, line))

        return "\n".join(processed_lines)
