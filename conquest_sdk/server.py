"""
Conquest SDK Server - REST API over a ConquestAgent

Endpoints:
  GET  /health                       - Liveness
  GET  /api/status                   - Player, ledger time, config, counters
  GET  /api/fleets                   - Pending fleets (secrets never included)
  POST /api/fleets                   - Send a fleet
  POST /api/fleets/<id>/resolve      - Resolve a fleet
  GET  /api/exits                    - Open exits
  POST /api/exits                    - Begin exit for planets
  GET  /api/exits/<planet_id>        - Verify one exit against the ledger
  POST /api/withdraw                 - Withdraw completed exits
  POST /api/simulate                 - Predict a fleet outcome
  GET  /api/planets/around           - Planets near a point
  POST /api/sweep                    - Run one reconciliation pass
"""

import logging
import time

from flask import Flask, jsonify, request
from flask_cors import CORS

from .errors import StorageError

log = logging.getLogger(__name__)

# error code -> HTTP status
ERROR_STATUS = {
    "input_error": 400,
    "commitment_unrecoverable": 404,
    "ledger_rejection": 422,
    "ledger_unavailable": 503,
}


def _respond(result: dict):
    if result.get("status") == "error":
        return jsonify(result), ERROR_STATUS.get(result.get("error"), 500)
    return jsonify(result)


def _bad_request(message: str):
    return jsonify({"status": "error", "error": "input_error", "message": message, "retryable": False}), 400


def _int_arg(data: dict, name: str, default=None):
    value = data.get(name, default)
    if value is None:
        raise ValueError(f"Missing {name}")
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    return int(value)


def create_app(agent) -> Flask:
    """
    Build the Flask app for one agent session.

    Args:
        agent: ConquestAgent (already configured with ledger and store)
    """
    app = Flask(__name__)
    CORS(app)

    @app.errorhandler(StorageError)
    def storage_error(e):
        log.error(f"Storage failure: {e.message}")
        return jsonify(e.to_dict()), 500

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.route('/health')
    def health():
        """Simple health check - returns ok if server is running"""
        return jsonify({'ok': True, 'timestamp': int(time.time())})

    @app.route('/api/status')
    def api_status():
        return _respond(agent.status())

    # =========================================================================
    # FLEETS
    # =========================================================================

    @app.route('/api/fleets')
    def api_fleets():
        return _respond(agent.get_pending_fleets())

    @app.route('/api/fleets', methods=['POST'])
    def api_send_fleet():
        """
        Send a fleet.

        Request:
        {
            "from": "123...",            # source location id
            "to": "456...",              # destination location id
            "quantity": 5000,
            "gift": false,               # optional
            "specific": "0x...",         # optional
            "arrival_time_wanted": 0     # optional
        }
        """
        data = request.get_json(silent=True)
        if not data:
            return _bad_request('No data provided')
        if 'from' not in data or 'to' not in data:
            return _bad_request('Missing from/to')
        try:
            quantity = _int_arg(data, 'quantity')
            arrival_time_wanted = _int_arg(data, 'arrival_time_wanted', 0)
        except (TypeError, ValueError) as e:
            return _bad_request(str(e))

        return _respond(agent.send(
            data['from'],
            data['to'],
            quantity,
            gift=bool(data.get('gift', False)),
            specific=data.get('specific'),
            arrival_time_wanted=arrival_time_wanted,
        ))

    @app.route('/api/fleets/<fleet_id>/resolve', methods=['POST'])
    def api_resolve_fleet(fleet_id):
        return _respond(agent.resolve(fleet_id))

    # =========================================================================
    # EXITS
    # =========================================================================

    @app.route('/api/exits')
    def api_exits():
        return _respond(agent.get_pending_exits())

    @app.route('/api/exits', methods=['POST'])
    def api_begin_exit():
        """Request: {"planet_ids": ["123...", ...]}"""
        data = request.get_json(silent=True)
        if not data or not data.get('planet_ids'):
            return _bad_request('Missing planet_ids')
        return _respond(agent.begin_exit(data['planet_ids']))

    @app.route('/api/exits/<planet_id>')
    def api_exit_status(planet_id):
        return _respond(agent.verify_exit_status(planet_id))

    @app.route('/api/withdraw', methods=['POST'])
    def api_withdraw():
        """Request: {"planet_ids": [...]} or {} for every completed exit"""
        data = request.get_json(silent=True) or {}
        return _respond(agent.withdraw(data.get('planet_ids')))

    # =========================================================================
    # SIMULATION / PLANETS
    # =========================================================================

    @app.route('/api/simulate', methods=['POST'])
    def api_simulate():
        data = request.get_json(silent=True)
        if not data:
            return _bad_request('No data provided')
        if 'fleets' in data:
            try:
                arrival_time = data.get('arrival_time')
                arrival_time = None if arrival_time is None else int(arrival_time)
            except (TypeError, ValueError):
                return _bad_request('arrival_time must be an integer')
            return _respond(agent.simulate_multiple(data.get('to'), data['fleets'], arrival_time))
        if 'from' not in data or 'to' not in data:
            return _bad_request('Missing from/to')
        try:
            quantity = _int_arg(data, 'quantity')
            arrival_time_wanted = _int_arg(data, 'arrival_time_wanted', 0)
        except (TypeError, ValueError) as e:
            return _bad_request(str(e))
        return _respond(agent.simulate(
            data['from'],
            data['to'],
            quantity,
            gift=bool(data.get('gift', False)),
            specific=data.get('specific'),
            arrival_time_wanted=arrival_time_wanted,
        ))

    @app.route('/api/planets/around')
    def api_planets_around():
        """Query: /api/planets/around?x=0&y=0&radius=10"""
        try:
            x = int(request.args.get('x', 0))
            y = int(request.args.get('y', 0))
            radius = int(request.args.get('radius', 10))
        except ValueError:
            return _bad_request('x, y and radius must be integers')
        with_state = request.args.get('state', '1') not in ('0', 'false')
        return _respond(agent.get_planets_around(x, y, radius, with_state=with_state))

    @app.route('/api/sweep', methods=['POST'])
    def api_sweep():
        return _respond(agent.sweep())

    return app
