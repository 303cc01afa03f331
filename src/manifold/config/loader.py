"""Load API configuration documents from JSON."""

import logging
from pathlib import Path

from pydantic import ValidationError

from manifold.config.models import ApiConfig
from manifold.errors import ConfigurationError

logger = logging.getLogger(__name__)


def parse_api_config(text: str | bytes) -> ApiConfig:
    """Parse a JSON API configuration document.

    Args:
        text: Raw JSON document

    Returns:
        Validated ApiConfig

    Raises:
        ConfigurationError: If the document is not valid JSON or fails validation
    """
    try:
        return ApiConfig.model_validate_json(text)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid API config: {e}") from e


def load_api_config(path: str | Path) -> ApiConfig:
    """Read and parse an API configuration file.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read API config {path}: {e}") from e

    config = parse_api_config(text)
    logger.debug(
        f"Loaded API config from {path}: {len(config.method)} method entries, "
        f"max_size={config.channel_pool.max_size}"
    )
    return config
