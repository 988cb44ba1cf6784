import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from aliyundrive_fuse.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_WORKDIR = str(Path.home() / ".cache/aliyundrive-fuse")

API_BASE_URL = "https://api.aliyundrive.com"
# Tokens copied from a web session and tokens issued to the app (QR login)
# are exchanged at different endpoints; the latter are stored with a prefix
REFRESH_TOKEN_URL = "https://websv.aliyundrive.com/token/refresh"
MOBILE_REFRESH_TOKEN_URL = "https://auth.aliyundrive.com/v2/account/token"
MOBILE_TOKEN_PREFIX = "mobile:"

DEFAULT_SETTINGS = {
    "refresh_token": None,
    "mount_point": None,
    "root": "/",
    "workdir": DEFAULT_WORKDIR,
    "cache_size": 1000,
    "cache_ttl": 600,
    "read_buffer_size": 10 * 1024 * 1024,
    "upload_chunk_size": 10 * 1024 * 1024,
    "no_trash": False,
    "domain_id": None,
    "read_only": False,
    "debug": False,
    "allow_other": False,
}

# Environment variables consulted after the settings file
ENV_OVERRIDES = {
    "REFRESH_TOKEN": "refresh_token",
    "ALIYUNDRIVE_MOUNT": "mount_point",
}


@dataclass(frozen=True)
class DriveConfig:
    """Endpoints and identity for one account variant."""
    api_base_url: str
    refresh_token_url: str
    workdir: Optional[str] = None
    app_id: Optional[str] = None
    mobile_refresh_token_url: Optional[str] = None

    @property
    def is_pds(self) -> bool:
        return self.app_id is not None

    @classmethod
    def for_variant(cls, domain_id: Optional[str] = None, workdir: Optional[str] = None) -> "DriveConfig":
        if domain_id:
            return cls(
                api_base_url=f"https://{domain_id}.api.aliyunpds.com",
                refresh_token_url=f"https://{domain_id}.auth.aliyunpds.com/v2/account/token",
                workdir=workdir,
                app_id="BasicUI",
            )
        return cls(api_base_url=API_BASE_URL, refresh_token_url=REFRESH_TOKEN_URL, workdir=workdir,
                   mobile_refresh_token_url=MOBILE_REFRESH_TOKEN_URL)

    def token_url(self, mobile: bool = False) -> str:
        if mobile and self.mobile_refresh_token_url:
            return self.mobile_refresh_token_url
        return self.refresh_token_url


def load_settings(config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                  environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Merge defaults <- YAML file <- environment <- explicit overrides.

    Overrides with a value of None are ignored so unset CLI flags fall through.
    """
    settings = DEFAULT_SETTINGS.copy()

    if config_path:
        if not os.path.exists(config_path):
            raise ConfigError(f"Config file not found: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {config_path}")
        unknown = set(data) - set(DEFAULT_SETTINGS)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {sorted(unknown)}")
        settings.update({k: v for k, v in data.items() if k in DEFAULT_SETTINGS})

    env = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            settings[key] = env[var]

    for key, value in (overrides or {}).items():
        if value is not None:
            settings[key] = value

    if settings["no_trash"] and settings["domain_id"]:
        raise ConfigError("no_trash and domain_id cannot be used together")
    if settings["workdir"]:
        settings["workdir"] = os.path.expanduser(settings["workdir"])
    if settings["mount_point"]:
        settings["mount_point"] = os.path.expanduser(settings["mount_point"])
    for key in ("cache_size", "cache_ttl", "read_buffer_size", "upload_chunk_size"):
        settings[key] = int(settings[key])
        if settings[key] <= 0:
            raise ConfigError(f"{key} must be positive")

    return settings
