"""
WSGI entry point for Gunicorn.

Bootstraps config and EventsRecorderOrchestrator, starts background services
(cameras, MQTT, scheduler), and exposes the Flask app. Must be run with exactly
one Gunicorn worker (enforced via EVENTS_RECORDER_SINGLE_WORKER set by
run_server.py): a second worker would start a second encoder per camera.
Registers graceful shutdown on SIGTERM/SIGINT so every encoder is stopped
before the process exits.
"""

import logging
import os
import signal

from events_recorder.main import bootstrap

logger = logging.getLogger("events-recorder")

# Module-level orchestrator reference for signal handler (set in create_application).
_orchestrator = None


def _shutdown_handler(signum: int, frame) -> None:
    """Call orchestrator.stop() on SIGTERM/SIGINT so encoders and threads shut down cleanly."""
    logger.info("Received signal %s, shutting down orchestrator...", signum)
    if _orchestrator:
        _orchestrator.stop()
    raise SystemExit(0)


def create_application():
    """Create the WSGI application: bootstrap, start_services, return Flask app."""
    global _orchestrator

    # Mandatory single-worker guardrail: run_server.py sets this before execvp.
    if os.environ.get("EVENTS_RECORDER_SINGLE_WORKER") != "1":
        raise RuntimeError(
            "Gunicorn must be started via run_server.py with exactly one worker (-w 1). "
            "Multiple workers would run duplicate encoders per camera. "
            "Set EVENTS_RECORDER_SINGLE_WORKER=1 if invoking gunicorn manually with -w 1."
        )

    config, orchestrator = bootstrap()
    _orchestrator = orchestrator

    orchestrator.start_services()

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)

    return orchestrator.flask_app


application = create_application()
