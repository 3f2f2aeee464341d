"""
Environment variable management for service settings and credentials.
"""

import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# env var -> (config section, field, caster)
_ENV_FIELDS: Dict[str, tuple] = {
    "MONGO_URI": ("mongo", "uri", str),
    "ELASTICSEARCH_HOST": ("search", "host", str),
    "INITIAL_DOWNLOAD_DELAY_MINUTES": ("refresh", "initial_download_delay_minutes", int),
    "REFRESH_INTERVAL_HOURS": ("refresh", "refresh_interval_hours", int),
    "ANALYSIS_STARTUP_DELAY_MINUTES": ("analysis", "startup_delay_minutes", int),
    "ANALYSIS_BATCH_SIZE": ("analysis", "batch_size", int),
    "ANALYSIS_RATE_LIMIT": ("analysis", "rate_limit_rpm", int),
    "ANALYSIS_TIMEOUT_SECONDS": ("llm", "timeout", int),
    "ANALYSIS_MAX_TOKENS": ("llm", "max_tokens", int),
    "ANALYSIS_MODEL": ("llm", "model", str),
    "GROK_API_KEY": ("llm", "api_key", str),
    "ANALYSIS_PROMPT_SUMMARY": ("analysis", "summary_prompt", str),
    "ANALYSIS_PROMPT_ANTIQUATED": ("analysis", "antiquated_prompt", str),
    "ANALYSIS_PROMPT_BUSINESS_UNFRIENDLY": ("analysis", "business_unfriendly_prompt", str),
    "ECFR_ANALYZER_LOG_LEVEL": ("logging", "level", lambda v: v.upper()),
}


class EnvironmentManager:
    """Manages environment variable integration."""

    def __init__(self, environ: Optional[Dict[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        value = self._environ.get(name)
        if value is None or value.strip() == "":
            return None
        return value

    def get_config_overrides(self) -> Dict[str, Dict[str, Any]]:
        """
        Collect configuration overrides from the environment.

        Returns:
            Nested mapping of section -> field -> value

        Raises:
            ValueError: If a numeric variable does not hold an integer
        """
        overrides: Dict[str, Dict[str, Any]] = {}

        for var_name, (section, field_name, caster) in _ENV_FIELDS.items():
            raw = self.get(var_name)
            if raw is None:
                continue
            try:
                value = caster(raw.strip() if caster is int else raw)
            except ValueError as e:
                raise ValueError(f"{var_name} must be an integer, got {raw!r}") from e
            overrides.setdefault(section, {})[field_name] = value

        if overrides:
            masked = sorted(
                var for var in _ENV_FIELDS if self.get(var) is not None
            )
            logger.debug(f"Environment overrides present: {', '.join(masked)}")

        return overrides

    def get_config_path(self) -> Optional[str]:
        """Optional YAML configuration file path."""
        return self.get("ECFR_ANALYZER_CONFIG_PATH")

    def has_llm_credentials(self) -> bool:
        return self.get("GROK_API_KEY") is not None
