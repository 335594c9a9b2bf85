"""Alert Engine HTTP handler - heartbeat intake and engine operations.

The production scheduler calls ``POST /tick`` on a fixed interval and
``POST /subjects/<id>/evaluate`` for every monitored subject.
Collaborators here are the in-process implementations; a deployment
swaps them for real stores and transports.
"""
import logging
import os
from datetime import datetime

from flask import Flask, request, jsonify

from carewatch.shared.models import ConfirmationDecision
from carewatch.shared.utils import configure_pii_salt, hash_pii
from carewatch.services.audit_service import AuditLogger
from .config import EngineConfig
from .confirmation import ContactNotOnRequestError
from .engine import AlertEngine
from .in_memory import (
    InMemoryActivitySource,
    InMemoryContactDirectory,
    InMemoryHeartbeatSource,
    InMemoryPeerReportSource,
    InMemoryProfileSource,
    InMemoryThresholdStore,
    LoggingAdminNotifier,
    LoggingChannel,
    LoggingConfirmationTransport,
)
from .report_publisher import KinesisReportChannel
from .scheduler import SystemClock

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure PII salt
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

# Initialize engine
clock = SystemClock()
heartbeats = InMemoryHeartbeatSource()
activity = InMemoryActivitySource(clock)
peer_reports = InMemoryPeerReportSource(clock)
threshold_store = InMemoryThresholdStore()
contacts = InMemoryContactDirectory()
profiles = InMemoryProfileSource()
audit_logger = AuditLogger(clock=clock)

report_channel = KinesisReportChannel(
    stream_name=os.getenv("KINESIS_STREAM_NAME", "carewatch-emergency-reports"),
    enabled=os.getenv("CAREWATCH_REPORTS_ENABLED", "false").lower() == "true",
)
engine = AlertEngine(
    config=EngineConfig.from_env(),
    clock=clock,
    heartbeats=heartbeats,
    activity=activity,
    peer_reports=peer_reports,
    threshold_store=threshold_store,
    contacts=contacts,
    profiles=profiles,
    channels=[LoggingChannel("local"), LoggingChannel("push"), LoggingChannel("in_app")],
    emergency_channel=report_channel,
    transport=LoggingConfirmationTransport(),
    admin_notifier=LoggingAdminNotifier(),
    audit_logger=audit_logger,
)


def _parse_timestamp(value: str) -> datetime:
    """ISO-8601 timestamp; a trailing ``Z`` means UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "alert-engine",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    if engine is None:
        return jsonify({"status": "not_ready"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/subjects/<user_id>/heartbeat", methods=["POST"])
def record_heartbeat(user_id: str):
    """Record a heartbeat and re-evaluate the subject.

    Request Body (optional):
        {
            "timestamp": "2026-01-14T12:00:00Z"
        }

    Response:
        {
            "user_id": "user_123",
            "timestamp": "2026-01-14T12:00:00+00:00",
            "evaluation": {...}
        }
    """
    try:
        data = request.get_json(silent=True) or {}
        raw = data.get("timestamp")
        try:
            timestamp = _parse_timestamp(raw) if raw else clock.now()
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid timestamp"}), 400

        record = heartbeats.record(user_id, timestamp)
        result = engine.evaluate(user_id)

        logger.info(
            "HEARTBEAT_RECEIVED",
            extra={"user_id_hash": hash_pii(user_id), "outcome": result.outcome.value}
        )
        return jsonify({
            "user_id": user_id,
            "timestamp": record.timestamp.isoformat(),
            "evaluation": result.to_payload(),
        }), 200

    except Exception as e:
        logger.error("HEARTBEAT_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to record heartbeat"}), 500


@app.route("/subjects/<user_id>/evaluate", methods=["POST"])
def evaluate_subject(user_id: str):
    """Run the alert pipeline for one subject."""
    try:
        result = engine.evaluate(user_id)
        return jsonify(result.to_payload()), 200

    except Exception as e:
        logger.error(
            "EVALUATE_ERROR",
            extra={"user_id_hash": hash_pii(user_id), "error": str(e)}
        )
        return jsonify({"error": "Failed to evaluate subject"}), 500


@app.route("/subjects/<user_id>/status", methods=["GET"])
def subject_status(user_id: str):
    try:
        return jsonify(engine.get_status(user_id).to_payload()), 200

    except Exception as e:
        logger.error("STATUS_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to load status"}), 500


@app.route("/confirmations/<request_id>/responses", methods=["POST"])
def submit_confirmation_response(request_id: str):
    """Record a contact's answer to a confirmation request.

    Request Body:
        {
            "contact_id": "contact_1",
            "decision": "confirm" | "deny"
        }
    """
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Request body required"}), 400

        contact_id = data.get("contact_id")
        decision = data.get("decision")
        if not contact_id or not decision:
            return jsonify({"error": "Missing contact_id or decision"}), 400

        try:
            decision = ConfirmationDecision(decision)
        except ValueError:
            return jsonify({"error": "Decision must be confirm or deny"}), 400

        try:
            confirmation = engine.submit_confirmation_response(request_id, contact_id, decision)
        except ContactNotOnRequestError:
            return jsonify({"error": "Contact is not on this request"}), 403

        if confirmation is None:
            return jsonify({"error": "Confirmation request not found"}), 404

        return jsonify(confirmation.to_payload()), 200

    except Exception as e:
        logger.error("CONFIRMATION_RESPONSE_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to record response"}), 500


@app.route("/tick", methods=["POST"])
def tick():
    """Run due scheduled work (retries, re-checks, confirmation timers)."""
    try:
        executed = engine.tick()
        return jsonify({"executed": executed}), 200

    except Exception as e:
        logger.error("TICK_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to run scheduled work"}), 500


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "8010"))
    app.run(host="0.0.0.0", port=port, debug=False)
