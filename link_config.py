"""Configuration, endpoint/secret resolution and device identity.

Values come from (highest first): environment variables, the JSON config
file, then the built-in defaults below.
"""

import json
import logging
import os
import random
import string
import time
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "uplift-link" / "config.json"
DATA_DIR = Path.home() / ".local" / "share" / "uplift-link"
DEVICE_ID_FILE = DATA_DIR / "device_id"

# Config keys that may be supplied through the environment
ENV_KEYS = {
    "relay_ws_url": "RELAY_WS_URL",
    "api_endpoint": "API_ENDPOINT",
    "auth_token": "UPLIFT_AUTH_TOKEN",
    "azure_endpoint": "AZURE_OPENAI_ENDPOINT",
    "azure_api_key": "AZURE_OPENAI_API_KEY",
    "eleven_labs_api_key": "ELEVEN_LABS_API_KEY",
    "eleven_labs_voice_id": "ELEVEN_LABS_VOICE_ID",
}

DEFAULTS = {
    "relay_ws_url": "",
    "api_endpoint": "",
    "auth_token": "",
    "azure_endpoint": "",
    "azure_api_key": "",
    "eleven_labs_api_key": "",
    "eleven_labs_voice_id": "",
    "agents_dir": str(DATA_DIR / "agents"),
    "log_dir": "",
    "input_device_index": None,
    "desktop_notifications": True,
    # Relay channel
    "relay_ping_interval": 30.0,
    "relay_max_reconnect_attempts": 5,
    "relay_base_delay": 1.0,
    # Chat stream
    "chat_stream_timeout": 60.0,
    # Voice session
    "speech_connect_timeout": 10.0,
    "voice_reconnect_delay": 2.0,
    "playback_idle_grace": 0.5,
    "level_interval": 0.1,
}


def config_path() -> Path:
    override = os.environ.get("UPLIFT_LINK_CONFIG")
    return Path(override).expanduser() if override else CONFIG_FILE


def load_config(path: Path | None = None) -> dict:
    """Load configuration merged over the defaults, environment wins."""
    path = path or config_path()
    config = dict(DEFAULTS)
    try:
        if path.exists():
            with open(path) as f:
                stored = json.load(f)
            if isinstance(stored, dict):
                config.update(stored)
            else:
                logger.warning("Ignoring config %s: expected a JSON object", path)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read config %s: %s", path, e)

    for key, env_name in ENV_KEYS.items():
        value = os.environ.get(env_name)
        if value:
            config[key] = value
    return config


def save_config(config: dict, path: Path | None = None):
    """Save configuration (secrets resolved from the environment are not written back)."""
    path = path or config_path()
    stored = {k: v for k, v in config.items()
              if not (k in ENV_KEYS and os.environ.get(ENV_KEYS[k]) == v)}
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(stored, f, indent=2)


def _base36(length: int) -> str:
    alphabet = string.digits + string.ascii_lowercase
    return "".join(random.choice(alphabet) for _ in range(length))


def get_or_create_device_id(path: Path | None = None) -> str:
    """Return the persisted device id, generating one on first use."""
    path = path or DEVICE_ID_FILE
    try:
        if path.exists():
            device_id = path.read_text().strip()
            if device_id:
                return device_id
    except OSError as e:
        logger.warning("Could not read device id %s: %s", path, e)

    device_id = f"device_{int(time.time() * 1000)}_{_base36(13)}"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id)
    logger.info("Generated device id %s", device_id)
    return device_id
