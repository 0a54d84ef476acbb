"""Load and validate chorus.yaml configuration."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from chorus.config.models import ChorusConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "chorus.yaml"

_FRIENDLY_MESSAGES = {
    "missing": "This field is required",
    "extra_forbidden": "Unknown field",
}


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> ChorusConfig:
    """Build the effective configuration.

    An explicit *path* must exist.  Without one, ``chorus.yaml`` in the
    working directory is used if present and the built-in defaults
    otherwise.  A ``.env`` next to the config (or in the working
    directory) is loaded into the environment first, without overriding
    variables that are already set.

    Raises:
        ConfigError: missing explicit file, unreadable file, bad YAML or
            a document that does not validate.
    """
    if path is not None and not Path(path).is_file():
        raise ConfigError(f"Config file not found: {path}")

    config_path = Path(path) if path is not None else Path.cwd() / DEFAULT_CONFIG_NAME
    env_file = config_path.parent / ".env"
    if env_file.is_file():
        load_dotenv(env_file)

    if not config_path.is_file():
        logger.debug("no %s in %s, using defaults", DEFAULT_CONFIG_NAME, config_path.parent)
        return ChorusConfig()

    document = _parse(config_path)
    try:
        return ChorusConfig.model_validate(document)
    except ValidationError as exc:
        raise ConfigError(_describe(exc)) from exc


def _parse(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read config file: {exc}") from exc
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" (line {mark.line + 1}, column {mark.column + 1})" if mark is not None else ""
        raise ConfigError(f"Invalid YAML in {path.name}{where}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        )
    return data


def _describe(exc: ValidationError) -> str:
    lines = ["Config validation failed:"]
    for err in exc.errors():
        field = " → ".join(str(part) for part in err["loc"])
        message = _FRIENDLY_MESSAGES.get(err["type"], err["msg"])
        lines.append(f"  {field}: {message}")
    return "\n".join(lines)
