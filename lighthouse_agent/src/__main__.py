from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from lighthouse_agent.src.controller import build_controller_from_env, env_int
from lighthouse_agent.src.health import start_health_server
from lighthouse_agent.src.kube import build_clients, load_kube_configuration
from lighthouse_agent.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
SHUTDOWN_TIMEOUT_SECONDS = 30
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"), r"\1[REDACTED]"),
    (
        re.compile(r"(?i)(\b(?:authorization|token|password|client[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects with bearer tokens and credentials masked."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    # The kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def main() -> None:
    """Agent entrypoint: configure logging, start the health server and run the controller until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, discovery_api, custom_api = build_clients()

    controller = build_controller_from_env(
        core_api=core_api,
        discovery_api=discovery_api,
        custom_api=custom_api,
    )
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(ready=controller.ready, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.start(shutdown_event)
    shutdown_event.wait()

    if not controller.join(timeout=SHUTDOWN_TIMEOUT_SECONDS):
        logger.error(
            "ServiceImport controller did not stop within %ss; exiting anyway",
            SHUTDOWN_TIMEOUT_SECONDS,
        )

    health_server.shutdown()
    logger.info("Agent stopped")


if __name__ == "__main__":
    main()
