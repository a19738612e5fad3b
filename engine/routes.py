"""
Flask routes for the maintenance engine.

All routes are registered on the engine Blueprint and speak JSON. Actions
return as soon as the operation is launched; progress is read back through
/api/history.
"""

import logging

from flask import jsonify, request

from engine.models import Config
from engine.operations import ACTION_START, ValidationError

logger = logging.getLogger(__name__)


def register_routes(bp, state, operations, registry):
    """Register all engine routes on the given Blueprint."""

    @bp.errorhandler(ValidationError)
    def handle_validation_error(e):
        logger.info(f"Rejected request to {request.path}: {e}")
        return jsonify({'error': str(e)}), 400

    # =========================================================================
    # CONFIG & HISTORY
    # =========================================================================

    @bp.route('/api/config', methods=['GET', 'POST'])
    def api_config():
        if request.method == 'POST':
            data = request.get_json(silent=True)
            if isinstance(data, dict):
                state.replace_config(Config.from_dict(data))
                registry.rebuild()
                logger.info("Configuration replaced, schedules rebuilt")
            else:
                logger.warning("Ignoring config update with an unparseable body")
        return jsonify(state.get_config().to_dict())

    @bp.route('/api/history', methods=['GET'])
    def api_history():
        return jsonify([e.to_dict() for e in state.get_history()])

    @bp.route('/api/logs/clear', methods=['GET', 'POST'])
    def api_clear_logs():
        state.clear_history()
        return jsonify({'status': 'cleared'})

    # =========================================================================
    # ACTIONS
    # =========================================================================

    @bp.route('/api/action/snapshot', methods=['GET', 'POST'])
    def api_action_snapshot():
        operations.trigger_snapshot()
        return jsonify({'status': 'triggered', 'message': 'Snapshot initiated'})

    @bp.route('/api/action/scrub', methods=['GET', 'POST'])
    def api_action_scrub():
        entry_id = operations.scrub(request.args.get('action', ACTION_START))
        return jsonify({'status': 'ok', 'id': entry_id})

    @bp.route('/api/action/balance', methods=['GET', 'POST'])
    def api_action_balance():
        entry_id = operations.balance(request.args.get('action', ACTION_START))
        return jsonify({'status': 'ok', 'id': entry_id})

    @bp.route('/api/action/defrag', methods=['GET', 'POST'])
    def api_action_defrag():
        return jsonify({'status': 'ok', 'id': operations.defrag()})

    @bp.route('/api/action/compsize', methods=['GET', 'POST'])
    def api_action_compsize():
        return jsonify({'status': 'ok', 'id': operations.compsize()})

    @bp.route('/api/action/purge_all', methods=['GET', 'POST'])
    def api_action_purge_all():
        operations.trigger_purge_all()
        return jsonify({'status': 'triggered'})
