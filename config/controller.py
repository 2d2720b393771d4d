"""Configuration controller for YAML-based session settings."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

import yaml

from ai.utils import (
    DEFAULT_STOP_PHRASES,
    PREFIX_PADDING_MS,
    SILENCE_DURATION_MS,
    SILENCE_THRESHOLD,
)


@dataclass(frozen=True)
class ConfigPaths:
    """Filesystem paths for configuration files."""

    config_dir: Path
    config_file: Path
    override_file: Path


DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
]


class ConfigController:
    """Singleton controller for loading session configuration."""

    _instance: "ConfigController | None" = None

    def __init__(self, config_file: str = "default.yaml", config_dir: Path | None = None) -> None:
        if ConfigController._instance is not None:
            raise RuntimeError("You cannot create another ConfigController class")

        config_dir = config_dir or Path(__file__).resolve().parent
        self.paths = ConfigPaths(
            config_dir=config_dir,
            config_file=config_dir / config_file,
            override_file=config_dir / "override.yaml",
        )
        self.config: dict[str, Any] = {}
        self.load_config()

    @classmethod
    def get_instance(cls) -> "ConfigController":
        """Return the singleton instance of the controller."""

        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def load_config(self) -> None:
        """Load configuration from default and override YAML files."""

        with self.paths.config_file.open("r", encoding="utf-8") as file:
            config = yaml.safe_load(file) or {}

        if self.paths.override_file.exists():
            with self.paths.override_file.open("r", encoding="utf-8") as file:
                override_config = yaml.safe_load(file) or {}
            if override_config:
                config = deep_merge(config, override_config)

        self.config = normalize_config(config)

    def get_config(self) -> dict[str, Any]:
        """Return the currently loaded configuration."""

        return dict(self.config)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge dictionaries, overriding base values with override values."""

    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def normalize_config(config: dict[str, Any]) -> dict[str, Any]:
    """Fill every section the session manager reads with typed defaults."""

    normalized = dict(config)

    session_cfg = dict(normalized.get("session") or {})
    session_cfg["voice"] = str(session_cfg.get("voice", "alloy"))
    session_cfg["language"] = str(session_cfg.get("language", "English (US)"))
    session_cfg["model"] = str(session_cfg.get("model", "gpt-4o-realtime-preview-2024-12-17"))
    session_cfg["transport"] = str(session_cfg.get("transport", "webrtc")).lower()
    session_cfg["wake_phrase"] = str(session_cfg.get("wake_phrase", "Hey Assistant"))
    normalized["session"] = session_cfg

    realtime_cfg = dict(normalized.get("realtime") or {})
    realtime_cfg["webrtc_url"] = str(realtime_cfg.get("webrtc_url", "https://api.openai.com/v1/realtime"))
    realtime_cfg["websocket_url"] = str(realtime_cfg.get("websocket_url", "wss://api.openai.com/v1/realtime"))
    realtime_cfg["ice_servers"] = list(realtime_cfg.get("ice_servers") or DEFAULT_ICE_SERVERS)
    realtime_cfg["connect_timeout_s"] = float(realtime_cfg.get("connect_timeout_s", 15.0))
    realtime_cfg["close_timeout_s"] = float(realtime_cfg.get("close_timeout_s", 5.0))
    realtime_cfg["force_close_timeout_s"] = float(realtime_cfg.get("force_close_timeout_s", 0.5))
    normalized["realtime"] = realtime_cfg

    backend_cfg = dict(normalized.get("backend") or {})
    backend_cfg["base_url"] = str(backend_cfg.get("base_url", "http://localhost:5000/api")).rstrip("/")
    backend_cfg["timeout_s"] = float(backend_cfg.get("timeout_s", 10.0))
    token_env = str(backend_cfg.get("auth_token_env", "BACKEND_AUTH_TOKEN"))
    backend_cfg["auth_token_env"] = token_env
    backend_cfg["auth_token"] = backend_cfg.get("auth_token") or os.getenv(token_env) or None
    normalized["backend"] = backend_cfg

    audio_cfg = dict(normalized.get("audio") or {})
    audio_cfg["input_device_name"] = audio_cfg.get("input_device_name") or None
    audio_cfg["output_device_name"] = audio_cfg.get("output_device_name") or None
    audio_cfg["sample_rate"] = int(audio_cfg.get("sample_rate", 24000))
    audio_cfg["chunk_size"] = int(audio_cfg.get("chunk_size", 960))
    audio_cfg["input_gain"] = float(audio_cfg.get("input_gain", 1.0))
    normalized["audio"] = audio_cfg

    turn_cfg = dict(normalized.get("turn_detection") or {})
    turn_cfg["type"] = str(turn_cfg.get("type", "server_vad"))
    turn_cfg["threshold"] = float(turn_cfg.get("threshold", SILENCE_THRESHOLD))
    turn_cfg["prefix_padding_ms"] = int(turn_cfg.get("prefix_padding_ms", PREFIX_PADDING_MS))
    turn_cfg["silence_duration_ms"] = int(turn_cfg.get("silence_duration_ms", SILENCE_DURATION_MS))
    turn_cfg["create_response"] = bool(turn_cfg.get("create_response", True))
    turn_cfg["interrupt_response"] = bool(turn_cfg.get("interrupt_response", True))
    normalized["turn_detection"] = turn_cfg

    transcription_cfg = dict(normalized.get("transcription") or {})
    transcription_cfg["model"] = str(transcription_cfg.get("model", "whisper-1"))
    normalized["transcription"] = transcription_cfg

    tools_cfg = dict(normalized.get("tools") or {})
    tools_cfg["timeout_s"] = float(tools_cfg.get("timeout_s", 20.0))
    tools_cfg["max_search_results"] = int(tools_cfg.get("max_search_results", 5))
    normalized["tools"] = tools_cfg

    context_cfg = dict(normalized.get("context") or {})
    context_cfg["location"] = str(context_cfg.get("location", ""))
    unit = str(context_cfg.get("temperature_unit", "F")).upper()
    context_cfg["temperature_unit"] = unit if unit in {"C", "F"} else "F"
    context_cfg["timezone"] = context_cfg.get("timezone") or None
    context_cfg["include_weather"] = bool(context_cfg.get("include_weather", True))
    context_cfg["include_memories"] = bool(context_cfg.get("include_memories", True))
    context_cfg["memory_limit"] = int(context_cfg.get("memory_limit", 8))
    context_cfg["memory_importance_min"] = int(context_cfg.get("memory_importance_min", 6))
    normalized["context"] = context_cfg

    phrases = normalized.get("stop_phrases")
    if not phrases:
        phrases = list(DEFAULT_STOP_PHRASES)
    normalized["stop_phrases"] = [str(phrase).strip() for phrase in phrases if str(phrase).strip()]

    logging_cfg = dict(normalized.get("logging") or {})
    logging_cfg["level"] = str(logging_cfg.get("level", "INFO")).upper()
    logging_cfg["file"] = logging_cfg.get("file") or None
    normalized["logging"] = logging_cfg

    return normalized
