"""
Configuration loading shared by CLI commands
"""

import logging
from pathlib import Path
from typing import Optional

import click

from ...core.config_manager import ConfigurationError, ConfigurationManager
from ...models.config_models import AnalyzerConfig


async def load_cli_config(ctx: click.Context) -> AnalyzerConfig:
    """
    Load configuration for a command and apply its log level

    Raises:
        click.ClickException: If the configuration is invalid
    """
    config_path: Optional[Path] = ctx.obj.get("config_path")
    try:
        config = await ConfigurationManager().load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if not ctx.obj.get("verbose"):
        logging.getLogger("ecfr_analyzer").setLevel(config.logging.level)
    return config
