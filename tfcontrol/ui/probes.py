"""
Probe server — Flask app for liveness, readiness and metrics.

Endpoints:
    GET /healthz   — process is alive
    GET /readyz    — certificate rotation has signalled (503 until then)
    GET /metrics   — JSON dump of the metrics registry
    GET /events    — recent resource events (``?object=ns/name`` filter)
"""

from __future__ import annotations

import logging
import threading

from flask import Blueprint, Flask, current_app, jsonify, request

from tfcontrol.core.engine.worker import WorkQueue
from tfcontrol.core.observability.health import check_readiness
from tfcontrol.core.observability.metrics import MetricsRegistry
from tfcontrol.core.services.cert_rotation import CertRotator
from tfcontrol.core.services.events import EventRecorder

logger = logging.getLogger(__name__)

probes_bp = Blueprint("probes", __name__)


@probes_bp.route("/healthz")
def healthz():  # type: ignore[no-untyped-def]
    return jsonify({"status": "ok"})


@probes_bp.route("/readyz")
def readyz():  # type: ignore[no-untyped-def]
    health = check_readiness(current_app.config["ROTATOR"], current_app.config.get("QUEUE"))
    code = 503 if health.status == "unhealthy" else 200
    return jsonify(health.to_dict()), code


@probes_bp.route("/metrics")
def metrics():  # type: ignore[no-untyped-def]
    return jsonify(current_app.config["METRICS"].to_dict())


@probes_bp.route("/events")
def events():  # type: ignore[no-untyped-def]
    recorder: EventRecorder = current_app.config["EVENTS"]
    return jsonify({"events": recorder.events(request.args.get("object") or None)})


def create_app(
    rotator: CertRotator,
    metrics_registry: MetricsRegistry,
    event_recorder: EventRecorder,
    queue: WorkQueue | None = None,
) -> Flask:
    """Create the probe application."""
    app = Flask(__name__)
    app.config["ROTATOR"] = rotator
    app.config["METRICS"] = metrics_registry
    app.config["EVENTS"] = event_recorder
    app.config["QUEUE"] = queue
    app.register_blueprint(probes_bp)
    return app


def parse_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host or "127.0.0.1", int(port)


def run_server(app: Flask, host: str = "127.0.0.1", port: int = 8081) -> None:
    """Run the Flask server (blocking)."""
    logger.info("Starting probe server on %s:%d", host, port)
    app.run(host=host, port=port, debug=False, use_reloader=False)


def start_in_background(app: Flask, address: str) -> threading.Thread:
    host, port = parse_address(address)
    thread = threading.Thread(target=run_server, args=(app, host, port), name="probes", daemon=True)
    thread.start()
    return thread
