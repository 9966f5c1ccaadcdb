#!/usr/bin/env python3
"""
Events Recorder - Bootstrap and entry point.

Provides bootstrap() for the WSGI worker (events_recorder.wsgi). The server is
started via run_server.py (Gunicorn); do not run Flask's built-in server.

Run the app with: python run_server.py
"""

import logging
import shutil
import sys
from pathlib import Path

from events_recorder.config import load_config
from events_recorder.logging_utils import setup_logging
from events_recorder.orchestrator import EventsRecorderOrchestrator

# Early logging for config loading (reconfigured after config is loaded)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %I:%M:%S %p",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger("events-recorder")


def _load_version() -> str:
    """Load version from version.txt next to the package or at the project root."""
    try:
        pkg_dir = Path(__file__).resolve().parent
        for candidate in (
            pkg_dir / "version.txt",
            pkg_dir.parent.parent / "version.txt",
        ):
            if candidate.exists():
                return candidate.read_text().strip()
    except OSError:
        pass
    return "unknown"


def bootstrap() -> tuple[dict, EventsRecorderOrchestrator]:
    """Load config, set up logging, create and return (config, orchestrator).

    Used by the WSGI entry point (wsgi.py). Does not start the web server.
    """
    config = load_config()
    setup_logging(config.get("LOG_LEVEL", "INFO"))

    logger.info("VERSION = %s", _load_version())

    ffmpeg = config.get("FFMPEG_PATH", "ffmpeg")
    if shutil.which(ffmpeg) is None:
        logger.warning("Encoder '%s' not found on PATH; capture will fail until it is installed.", ffmpeg)

    orchestrator = EventsRecorderOrchestrator(config)
    return config, orchestrator


def main():
    """Entry point: direct user to run_server.py (Gunicorn is the only server)."""
    logger.error(
        "Events Recorder must be started with run_server.py (Gunicorn). "
        "Do not use python -m events_recorder.main to run the server."
    )
    sys.exit(1)


if __name__ == "__main__":
    main()
