# Config.py
# Environment configuration for the relay host and the standalone publisher.
# Values come from the process environment, optionally seeded from a .env file.

import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import load_dotenv

DEFAULT_ENGINE_URL = "mqtt://localhost:1883"
DEFAULT_WORKSPACE = "progo"

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _flag(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    engine_url: str = DEFAULT_ENGINE_URL
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    receivers: List[str] = field(default_factory=list)
    topics_override: List[str] = field(default_factory=list)
    workspace: str = DEFAULT_WORKSPACE
    connect_url: Optional[str] = None
    simulator_enabled: bool = False
    relay_ack: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from `env` (defaults to os.environ).

        The access key may be given as ENSYNC_CLIENT_ID or CLIENT_ACCESS_KEY;
        the first non-empty one wins.
        """
        if env is None:
            env = os.environ

        access_key = env.get("ENSYNC_CLIENT_ID") or env.get("CLIENT_ACCESS_KEY") or None
        connect_url = (env.get("ENSYNC_CONNECT_URL") or "").strip() or None

        return cls(
            engine_url=(env.get("ENSYNC_ENGINE_URL") or DEFAULT_ENGINE_URL).strip(),
            access_key=access_key,
            secret_key=env.get("SECRET_KEY") or None,
            receivers=_split_csv(env.get("RECEIVER_IDENTIFICATION_NUMBER")),
            topics_override=_split_csv(env.get("EVENT_TO_PUBLISH")),
            workspace=(env.get("ENSYNC_WORKSPACE") or DEFAULT_WORKSPACE).strip(),
            connect_url=connect_url.rstrip("/") if connect_url else None,
            simulator_enabled=_flag(env.get("SIMULATOR_ENABLED"), False),
            relay_ack=_flag(env.get("RELAY_ACK"), True),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        )


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    # Existing environment variables take precedence over the .env file
    load_dotenv(dotenv_path=dotenv_path, override=False)
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # paho and uvicorn are chatty at DEBUG
    logging.getLogger("paho").setLevel(logging.WARNING)
