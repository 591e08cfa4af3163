from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import logging
import os
import sys

# --- Path Configuration ---
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.append(PROJECT_ROOT)

from config.settings import PORT, SIMULATION_ENABLED, configure_logging
from ledger_services.aggregation.pipeline import AggregationStatus
from ledger_services.consensus.credentials import credentials_from_settings
from ledger_services.contract import EdgeContract, Operation
from ledger_services.errors import MalformedInputError, ReadingNotFoundError, StoreUnavailableError
from ledger_services.scheduler import SimulationScheduler

logger = logging.getLogger(__name__)

# HTTP status per aggregation outcome
AGGREGATION_HTTP_STATUS = {
    AggregationStatus.AGGREGATED: 201,
    AggregationStatus.NO_DATA: 200,
    AggregationStatus.TOO_SOON: 429,
    AggregationStatus.INTEGRITY_FAULT: 409,
    AggregationStatus.DIVERGED: 503,
}

READING_FIELDS = {
    "sensorId": "sensor_id",
    "building": "building",
    "floor": "floor",
    "CO2": "co2",
    "PM25": "pm25",
    "VOCs": "vocs",
}


def create_app(contract: EdgeContract = None) -> Flask:
    """Builds the Flask app around a contract; without one, the MongoDB-backed contract from settings is used."""
    app = Flask(__name__)
    CORS(app,
         origins="*",
         methods=["GET", "POST", "DELETE", "OPTIONS"],
         allow_headers=["Content-Type", "Authorization"])

    if contract is None:
        contract = EdgeContract.from_settings()
    app.config["CONTRACT"] = contract

    # --- Error mapping ---

    @app.errorhandler(MalformedInputError)
    def handle_malformed(e):
        return jsonify({"status": "error", "message": str(e)}), 400

    @app.errorhandler(ReadingNotFoundError)
    def handle_not_found(e):
        return jsonify({"status": "error", "message": str(e)}), 404

    @app.errorhandler(StoreUnavailableError)
    def handle_store_unavailable(e):
        logger.error(f"❌ Store unavailable: {e}")
        return jsonify({"status": "error", "message": str(e)}), 503

    @app.errorhandler(HTTPException)
    def handle_http(e):
        return jsonify({"status": "error", "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception(f"Unhandled error: {e}")
        return jsonify({"status": "error", "message": str(e)}), 500

    # --- Flask Routes ---

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "ok", "readings": contract.readings.count()})

    @app.route('/readings', methods=['POST'])
    def register_reading():
        """Registers one reading. Missing fields switch to a simulated reading."""
        body = request.get_json(silent=True)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            return jsonify({"status": "error", "message": "Request body must be a JSON object"}), 400

        arguments = {name: "" if body.get(field) is None else str(body[field])
                     for field, name in READING_FIELDS.items()}
        result = contract.invoke(Operation.REGISTER_READING, **arguments)
        return jsonify({
            "status": "success",
            "reading": result.reading.to_record(),
            "simulated": result.simulated,
            "alerts": [alert.to_dict() for alert in result.alerts],
        }), 201

    @app.route('/readings', methods=['GET'])
    def query_readings():
        return jsonify(contract.invoke(Operation.QUERY_READINGS))

    @app.route('/readings', methods=['DELETE'])
    def clear_readings():
        return jsonify(contract.invoke(Operation.CLEAR_READINGS))

    @app.route('/aggregate', methods=['POST'])
    def aggregate():
        outcome = contract.invoke(Operation.AGGREGATE)
        return jsonify(outcome.to_response()), AGGREGATION_HTTP_STATUS[outcome.status]

    @app.route('/aggregates', methods=['GET'])
    def list_aggregates():
        return jsonify(contract.invoke(Operation.LIST_AGGREGATES))

    @app.route('/validate', methods=['POST'])
    def validate():
        """
        Body: {"organizations": {"Org1MSP": {"privateKey": ..., "certificate": ...}}}.
        Without a body, credentials come from the configured MSP directories.
        """
        body = request.get_json(silent=True) or {}
        organizations = body.get("organizations") if isinstance(body, dict) else None
        if organizations is None:
            organizations = credentials_from_settings()
        if not isinstance(organizations, dict) or not organizations:
            return jsonify({"status": "error", "message": "No organization credentials provided or configured"}), 400

        result = contract.invoke(Operation.VALIDATE, organizations)
        return jsonify(result.to_record())

    @app.route('/anchor/verify', methods=['GET'])
    def verify_anchor():
        return jsonify(contract.invoke(Operation.VERIFY_ANCHOR).to_dict())

    @app.route('/readings/proof', methods=['GET'])
    def prove_reading():
        """Merkle audit path for ?timestamp=...&sensorId=... against the anchored root."""
        proof = contract.invoke(Operation.PROVE_READING,
                                request.args.get("timestamp", ""), request.args.get("sensorId", ""))
        return jsonify(proof)

    return app


# --- Application Initialization ---

if __name__ == '__main__':
    configure_logging()
    logger.info("🚀 Starting AirLedger Backend Server...")
    logger.info(f"📁 Project root: {PROJECT_ROOT}")

    app = create_app()
    scheduler = None
    if SIMULATION_ENABLED:
        scheduler = SimulationScheduler(app.config["CONTRACT"])
        scheduler.start()

    try:
        app.run(host='0.0.0.0', port=PORT, debug=False)
    finally:
        if scheduler is not None:
            scheduler.stop()
        app.config["CONTRACT"].close()
