"""Logging utilities for realtime control events and session updates."""

from __future__ import annotations

import atexit
import hashlib
import importlib
import importlib.util
import json
import logging
import logging.handlers
from pathlib import Path
import queue
from typing import Any, Dict, Optional


def _rich_available() -> bool:
    return importlib.util.find_spec("rich") is not None


if _rich_available():
    rich_logging = importlib.import_module("rich.logging")
    rich_console = importlib.import_module("rich.console")
    rich_text = importlib.import_module("rich.text")
    RichHandler = rich_logging.RichHandler
    Console = rich_console.Console
    Text = rich_text.Text
    console = Console()
else:
    RichHandler = None
    Console = None
    Text = None
    console = None


LOGGER_NAME = "voice_session"


def setup_logging() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    if RichHandler is not None:
        if not any(isinstance(h, RichHandler) for h in logger.handlers):
            handler = RichHandler(rich_tracebacks=True, console=console)
            formatter = logging.Formatter("%(message)s", datefmt="[%X]")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
    else:
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s %(levelname)s: %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)

    logger.propagate = False
    return logger


logger = setup_logging()

_queue_listener: logging.handlers.QueueListener | None = None
_queue_handlers: list[logging.Handler] = []
_file_log_path: Path | None = None
_atexit_registered = False


def _shutdown_file_logging() -> None:
    global _queue_listener

    if _queue_listener is not None:
        _queue_listener.stop()
        _queue_listener = None


def _remove_queue_handlers() -> None:
    for handler in _queue_handlers:
        if handler in logger.handlers:
            logger.removeHandler(handler)
    _queue_handlers.clear()


def enable_file_logging(log_path: Path) -> None:
    """Mirror the session logger into a file through a background queue."""

    global _queue_listener, _file_log_path, _atexit_registered

    log_path = log_path.expanduser()
    if _file_log_path == log_path and _queue_listener is not None:
        return

    if _queue_listener is not None:
        _queue_listener.stop()
        _queue_listener = None

    _remove_queue_handlers()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    file_handler.setFormatter(formatter)

    log_queue: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    queue_handler = logging.handlers.QueueHandler(log_queue)
    logger.addHandler(queue_handler)
    _queue_handlers.append(queue_handler)

    _queue_listener = logging.handlers.QueueListener(
        log_queue,
        file_handler,
        respect_handler_level=True,
    )
    _queue_listener.start()

    if getattr(_queue_listener, "_thread", None) is not None:
        _queue_listener._thread.daemon = True

    _file_log_path = log_path

    if not _atexit_registered:
        atexit.register(_shutdown_file_logging)
        _atexit_registered = True


def configure_logging(config: Dict[str, Any]) -> logging.Logger:
    """Apply the ``logging`` section of the session config."""

    section = config.get("logging") or {}
    level_name = str(section.get("level", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    log_file = section.get("file")
    if log_file:
        enable_file_logging(Path(str(log_file)))
    return logger


def _format_text(message: str, style: str) -> Any:
    if Text is None:
        return message
    return Text(message, style=style)


SPAMMY_EVENTS = {
    "input_audio_buffer.append",
    "response.audio.delta",
    "response.output_audio.delta",
    "response.audio_transcript.delta",
    "response.output_audio_transcript.delta",
    "response.text.delta",
    "response.function_call_delta",
    "response.function_call_arguments.delta",
    "conversation.item.input_audio_transcription.delta",
}

EVENT_EMOJIS = {
    "session.update": "🛠️",
    "session.created": "🔌",
    "session.updated": "🔄",
    "input_audio_buffer.speech_started": "🗣️",
    "input_audio_buffer.speech_stopped": "🤫",
    "conversation.item.create": "📝",
    "conversation.item.created": "📥",
    "conversation.item.input_audio_transcription.completed": "📝",
    "response.create": "➡️",
    "response.created": "📝",
    "response.output_item.added": "➕",
    "response.function_call_done": "📥",
    "response.function_call_arguments.done": "📥",
    "response.audio_transcript.done": "📝",
    "response.output_audio_transcript.done": "📝",
    "response.text.done": "📝",
    "response.done": "✔️ ",
    "response.cancelled": "⛔",
    "rate_limits.updated": "⏳",
    "error": "❌",
}


def log_ws_event(direction: str, event: dict[str, Any]) -> None:
    event_type = event.get("type", "Unknown")
    if event_type in SPAMMY_EVENTS:
        return

    emoji = EVENT_EMOJIS.get(event_type, "❓")
    icon = "⬆️ - Out" if direction == "Outgoing" else "⬇️ - In"
    style = "bold cyan" if direction == "Outgoing" else "bold green"
    logger.info(_format_text(f"{emoji} {icon} {event_type}", style=style))


def log_tool_call(function_name: str, args: Any, result: Any) -> None:
    logger.info(_format_text(f"🛠️ Calling function: {function_name} with args: {args}", "bold magenta"))
    logger.info(_format_text(f"🛠️ Function call result: {result}", "bold yellow"))


def log_error(message: str) -> None:
    logger.error(_format_text(message, style="bold red"))


def log_info(message: str, style: str = "bold white") -> None:
    logger.info(_format_text(message, style=style))


def log_warning(message: str) -> None:
    logger.warning(_format_text(message, style="bold yellow"))


MAX_STR = 38
TOOL_NAME_CAP = 35


def _truncate_str(s: str, max_len: int = MAX_STR) -> str:
    if len(s) <= max_len:
        return s
    return s[: max_len - 1] + "…"


def _first_line(s: str, max_len: int = 160) -> str:
    if not s:
        return ""
    line = s.strip().splitlines()[0]
    return _truncate_str(line, max_len)


def _sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _extract_summary(event: Dict[str, Any]) -> Dict[str, Any]:
    sess = (event or {}).get("session") or {}
    turn = sess.get("turn_detection") or {}
    tools = sess.get("tools") or []
    instructions = sess.get("instructions") or ""

    tool_names = [tool["name"] for tool in tools if isinstance(tool, dict) and tool.get("name")]

    return {
        "type": event.get("type"),
        "voice": sess.get("voice"),
        "modalities": sess.get("modalities"),
        "tool_choice": sess.get("tool_choice"),
        "vad": {
            "type": turn.get("type"),
            "threshold": turn.get("threshold"),
            "prefix_padding_ms": turn.get("prefix_padding_ms"),
            "silence_duration_ms": turn.get("silence_duration_ms"),
        },
        "tools": {
            "count": len(tools),
            "names": tool_names[:TOOL_NAME_CAP] + (["…"] if len(tool_names) > TOOL_NAME_CAP else []),
        },
        "instructions_digest": {
            "len": len(instructions),
            "sha256": _sha256(instructions)[:12],
            "preview": _first_line(instructions),
        },
    }


def _headline(summary: Dict[str, Any]) -> str:
    vad = summary.get("vad") or {}
    instr = summary.get("instructions_digest") or {}
    tools = summary.get("tools") or {}
    return (
        "SESSION_UPDATE | "
        f"voice={summary.get('voice')} | "
        f"vad={vad.get('type')}(th={vad.get('threshold')},pre={vad.get('prefix_padding_ms')},"
        f"sil={vad.get('silence_duration_ms')}) | "
        f"tools={tools.get('count')} | "
        f"instr={instr.get('sha256')} ({instr.get('len')})"
    )


def log_session_update(event: Dict[str, Any], *, full_payload: Optional[bool] = False) -> None:
    summary = _extract_summary(event)
    log_info(_headline(summary), style="bold blue")
    logger.debug(json.dumps(summary, indent=2, ensure_ascii=False))
    if full_payload:
        logger.debug(json.dumps(event, indent=2, ensure_ascii=False, default=str))
