"""Bot configuration loading.

Config files are merged in order, later files winning per key, and
environment variables override both.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger("opencode_bridge.config")

# Environment variable -> BotConfig field
ENV_OVERRIDES = {
    "TELEGRAM_BOT_TOKEN": "bot_token",
    "TELEGRAM_CHAT_ID": "chat_id",
    "TELEGRAM_THREAD_ID": "thread_id",
    "TELEGRAM_UPDATES_URL": "updates_url",
    "TELEGRAM_SEND_URL": "send_url",
}


class BotConfig(BaseModel):
    """Telegram side of the mirror."""

    model_config = ConfigDict(populate_by_name=True)

    bot_token: Optional[str] = Field(None, alias="botToken", description="Telegram bot token")
    chat_id: Optional[str] = Field(None, alias="chatId", description="Chat to mirror into")
    thread_id: Optional[int] = Field(None, alias="threadId", description="Forum topic ID")
    updates_url: Optional[str] = Field(
        None, alias="updatesUrl", description="Endpoint polled for updates"
    )
    send_url: Optional[str] = Field(
        None, alias="sendUrl", description="Endpoint for sends (Telegram API if unset)"
    )

    @field_validator("chat_id", mode="before")
    @classmethod
    def chat_id_as_string(cls, v: Any) -> Any:
        """Chat IDs are often written as numbers."""
        if isinstance(v, int):
            return str(v)
        return v


def config_paths(directory: Union[str, Path]) -> List[Path]:
    """Config files in the order they are applied."""
    return [
        Path.home() / ".config" / "opencode" / "telegram.json",
        Path(directory) / ".opencode" / "telegram.json",
    ]


def _read_config_file(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.debug(f"Config file not found or invalid: {path} ({str(e)[:100]})")
        return None

    if not isinstance(data, dict):
        logger.debug(f"Config file is not a JSON object: {path}")
        return None

    logger.info(f"Loaded config file {path} (keys: {sorted(data)})")
    return data


def _valid_keys(path: Path, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep the keys of a config file that validate on their own."""
    valid: Dict[str, Any] = {}
    for key, value in data.items():
        try:
            BotConfig.model_validate({key: value})
        except ValidationError:
            logger.warning(f"Ignoring invalid value for {key} in {path}")
            continue
        valid[key] = value
    return valid


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_var, field_name in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        if field_name == "thread_id":
            try:
                overrides[field_name] = int(value)
            except ValueError:
                logger.debug(f"Ignoring non-numeric {env_var}")
                continue
        else:
            overrides[field_name] = value
    return overrides


def load_config(directory: Union[str, Path]) -> BotConfig:
    """Load the bot configuration for a project directory.

    Args:
        directory: Project directory (its .opencode/telegram.json is read)

    Returns:
        BotConfig with environment overrides applied
    """
    paths = config_paths(directory)
    logger.debug(f"Checking config file paths: {[str(p) for p in paths]}")

    merged: Dict[str, Any] = {}
    for path in paths:
        data = _read_config_file(path)
        if not data:
            continue
        try:
            file_config = BotConfig.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid config file {path}: {e.error_count()} error(s)")
            file_config = BotConfig.model_validate(_valid_keys(path, data))
        merged.update(file_config.model_dump(exclude_unset=True))

    overrides = _env_overrides()
    if overrides:
        applied = [env for env, name in ENV_OVERRIDES.items() if name in overrides]
        logger.info(f"Environment variable overrides applied: {applied}")
        merged.update(overrides)

    return BotConfig(**merged)
