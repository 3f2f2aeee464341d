"""
Main configuration management: YAML file, environment overrides, validation.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..models.config_models import AnalyzerConfig
from .environment_manager import EnvironmentManager
from .yaml_parser import YAMLConfigParser

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Base exception for configuration-related errors."""

    pass


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigurationManager:
    """Loads and validates the analyzer configuration."""

    def __init__(self, env_manager: Optional[EnvironmentManager] = None) -> None:
        self.yaml_parser = YAMLConfigParser()
        self.env_manager = env_manager or EnvironmentManager()
        self.current_config: Optional[AnalyzerConfig] = None
        self.config_path: Optional[Path] = None
        self._lock = threading.Lock()

    async def load_config(self, config_path: Optional[Path] = None) -> AnalyzerConfig:
        """
        Load configuration with precedence defaults < YAML file < environment.

        Args:
            config_path: Optional YAML file; falls back to ECFR_ANALYZER_CONFIG_PATH

        Returns:
            Validated configuration

        Raises:
            ConfigurationError: If the file or any override is invalid
        """
        if config_path is None:
            env_path = self.env_manager.get_config_path()
            config_path = Path(env_path).expanduser() if env_path else None

        self.config_path = config_path

        try:
            config_data: Dict[str, Any] = {}
            if config_path is not None:
                config_data = await self.yaml_parser.load_yaml_config(config_path)

            config_data = _deep_merge(config_data, self.env_manager.get_config_overrides())
            validated_config = AnalyzerConfig(**config_data)

        except (ValidationError, ValueError, FileNotFoundError) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}") from e

        self._perform_extended_validation(validated_config)

        with self._lock:
            self.current_config = validated_config

        source = config_path if config_path else "environment"
        logger.info(f"Configuration loaded from {source}")
        return validated_config

    async def save_config(self, config: AnalyzerConfig, config_path: Path) -> None:
        """Write configuration to YAML, keeping the LLM credential out of the file."""

        config_dict = config.model_dump()
        if config_dict.get("llm", {}).get("api_key"):
            config_dict["llm"]["api_key"] = "${GROK_API_KEY}"

        try:
            await self.yaml_parser.save_yaml_config(config_dict, config_path)
        except RuntimeError as e:
            raise ConfigurationError(f"Configuration saving failed: {e}") from e

    def get_current_config(self) -> Optional[AnalyzerConfig]:
        """Get the currently loaded configuration."""
        with self._lock:
            return self.current_config

    def _perform_extended_validation(self, config: AnalyzerConfig) -> None:
        """Cross-field checks that only warrant a warning."""

        if not config.section_analysis_enabled:
            logger.warning("GROK_API_KEY not set; section analysis will be disabled")

        if config.analysis.batch_size > config.analysis.rate_limit_rpm:
            logger.warning(
                f"Analysis batch size ({config.analysis.batch_size}) exceeds the LLM rate "
                f"limit ({config.analysis.rate_limit_rpm} rpm); batches will be throttled"
            )

        for name in ("summary_prompt", "antiquated_prompt", "business_unfriendly_prompt"):
            prompt = getattr(config.analysis, name)
            if "{content}" not in prompt:
                logger.warning(f"Prompt '{name}' has no {{content}} placeholder")
