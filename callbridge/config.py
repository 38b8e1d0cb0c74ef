"""Configuration system for callbridge.

Supports loading from YAML files, dicts, or programmatic construction via
Pydantic models. Unset credentials and deployment settings are filled from
the process environment (``OPENAI_API_KEY``, ``TELNYX_API_KEY``, ``PORT``,
``PUBLIC_URL`` / ``RAILWAY_PUBLIC_DOMAIN``).
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import quote

import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP/WebSocket server settings."""

    host: str = "0.0.0.0"
    port: int = 3000
    # Public host the telephony provider reaches us on (scheme optional)
    public_url: str = ""
    webhook_path: str = "/webhook"
    media_path: str = "/media-stream-ws"


class TelephonyConfig(BaseModel):
    """Telephony provider and call-control settings."""

    provider: str = "telnyx"  # telnyx | voximplant
    api_key: str = ""
    api_base: str = "https://api.telnyx.com/v2"
    stream_track: str = "both_tracks"
    request_timeout_seconds: float = 10.0
    # Spoken to the caller when the AI session cannot be opened or drops
    failure_message: str = ""
    hangup_on_ai_failure: bool = False


class AIConfig(BaseModel):
    """Speech-AI realtime session settings."""

    api_key: str = ""
    url: str = "wss://api.openai.com/v1/realtime"
    model: str = "gpt-4o-realtime-preview-2024-10-01"
    instructions: str = (
        "You are a helpful AI phone assistant. "
        "Be concise and natural in conversation."
    )
    voice: str = "alloy"
    modalities: list[str] = Field(default_factory=lambda: ["text", "audio"])
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    transcription_model: str = "whisper-1"
    vad_threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500
    temperature: float = 0.8
    max_response_output_tokens: int = 4096
    # Prompt submitted as the opening turn once the session is configured
    greeting: str = "Hello, thank you for calling. How can I help you today?"
    # Upper bound on waiting for the AI session before streaming anyway
    ready_timeout_seconds: float = 5.0

    @property
    def connect_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}model={self.model}"


class AudioConfig(BaseModel):
    """Audio pipeline configuration."""

    telephony_sample_rate: int = 8000
    ai_sample_rate: int = 24000
    # Max frames buffered for a call while no media relay is attached
    outbound_queue_size: int = 500


class MediaConfig(BaseModel):
    """Telephony media socket settings."""

    framing: str = ""  # "" (provider default) | binary | json
    # Bind a media socket without call_id to the first session lacking a relay
    allow_unbound_fallback: bool = False
    close_grace_seconds: float = 2.0
    send_queue_size: int = 1000


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class BridgeConfig(BaseModel):
    """Top-level callbridge configuration.

    Examples:
        # Programmatic
        config = BridgeConfig(
            telephony=TelephonyConfig(provider="telnyx", api_key="KEY..."),
            ai=AIConfig(api_key="sk-..."),
        )

        # From YAML
        config = BridgeConfig.from_yaml("bridge.yaml")

        # Shorthand
        config = BridgeConfig.from_dict({
            "provider": "telnyx",
            "port": 3000,
            "public_url": "bridge.example.com",
        })
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    telephony: TelephonyConfig = Field(default_factory=TelephonyConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load configuration from a YAML file.

        ``${VAR}`` references inside the file are expanded from the environment.
        """
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(_expand_env(f.read())) or {}
        return cls._from_raw(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BridgeConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"telephony": {"provider": "telnyx"}, "server": {"port": 3000}}

        Shorthand format:
            {"provider": "telnyx", "port": 3000, "openai_api_key": "sk-..."}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> BridgeConfig:
        """Normalize and construct config from a raw dict."""
        flat_mappings = {
            "provider": ("telephony", "provider"),
            "host": ("server", "host"),
            "port": ("server", "port"),
            "public_url": ("server", "public_url"),
            "telnyx_api_key": ("telephony", "api_key"),
            "openai_api_key": ("ai", "api_key"),
            "model": ("ai", "model"),
            "voice": ("ai", "voice"),
            "framing": ("media", "framing"),
            "log_level": ("logging", "level"),
        }

        for flat_key, (section, nested_key) in flat_mappings.items():
            if flat_key in data and not isinstance(data[flat_key], dict):
                data.setdefault(section, {})
                data[section][nested_key] = data.pop(flat_key)

        config = cls(**data)
        config.apply_env()
        return config

    def apply_env(self, environ: dict[str, str] | None = None) -> None:
        """Fill unset credentials and deployment settings from the environment."""
        env = os.environ if environ is None else environ

        if not self.ai.api_key:
            self.ai.api_key = env.get("OPENAI_API_KEY", "")
        if not self.telephony.api_key and self.telephony.provider == "telnyx":
            self.telephony.api_key = env.get("TELNYX_API_KEY", "")
        if not self.server.public_url:
            self.server.public_url = env.get("PUBLIC_URL") or env.get("RAILWAY_PUBLIC_DOMAIN", "")
        if env.get("PORT") and "port" not in self.server.model_fields_set:
            self.server.port = int(env["PORT"])

    def missing_credentials(self) -> list[str]:
        """Names of required credentials that are not configured."""
        missing = []
        if not self.ai.api_key:
            missing.append("OPENAI_API_KEY")
        if self.telephony.provider == "telnyx" and not self.telephony.api_key:
            missing.append("TELNYX_API_KEY")
        return missing

    @property
    def public_host(self) -> str:
        """Public host with any URL scheme removed."""
        base = self.server.public_url or f"localhost:{self.server.port}"
        base = re.sub(r"^(https?|wss?)://", "", base)
        return base.rstrip("/")

    def media_stream_url(self, call_id: str) -> str:
        """URL the telephony provider should open for a call's media stream."""
        return (
            f"wss://{self.public_host}{self.server.media_path}"
            f"?call_id={quote(call_id, safe='')}"
        )


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env(text: str) -> str:
    return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), text)


def load_config(source: str | Path | dict[str, Any] | BridgeConfig | None = None) -> BridgeConfig:
    """Load a BridgeConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing BridgeConfig,
            or None for defaults plus environment.

    Returns:
        A BridgeConfig instance.
    """
    if isinstance(source, BridgeConfig):
        return source
    if source is None:
        return BridgeConfig.from_dict({})
    if isinstance(source, dict):
        return BridgeConfig.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if path.exists() and path.suffix in (".yaml", ".yml"):
            return BridgeConfig.from_yaml(path)
        # Maybe it's a provider name shorthand?
        return BridgeConfig.from_dict({"provider": str(source)})
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `callbridge init`
DEFAULT_CONFIG_YAML = """\
# callbridge configuration

server:
  host: 0.0.0.0
  # port: 3000                 # defaults to $PORT, else 3000
  public_url: "${PUBLIC_URL}"   # host the telephony provider can reach
  webhook_path: /webhook
  media_path: /media-stream-ws

telephony:
  provider: telnyx              # telnyx | voximplant
  api_key: "${TELNYX_API_KEY}"
  stream_track: both_tracks
  failure_message: ""
  hangup_on_ai_failure: false

ai:
  api_key: "${OPENAI_API_KEY}"
  model: gpt-4o-realtime-preview-2024-10-01
  voice: alloy
  instructions: "You are a helpful AI phone assistant. Be concise and natural in conversation."
  greeting: "Hello, thank you for calling. How can I help you today?"
  ready_timeout_seconds: 5.0

audio:
  telephony_sample_rate: 8000
  ai_sample_rate: 24000
  outbound_queue_size: 500

media:
  framing: ""                   # "" (provider default) | binary | json
  allow_unbound_fallback: false
  close_grace_seconds: 2.0

logging:
  level: INFO
"""
