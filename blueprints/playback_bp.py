"""
Pixli - Player Blueprint
Routes: /api/player/*
Dependencies: scheduler, sequence_store, audit_log
"""

from flask import Blueprint, jsonify, request
from sequence_errors import InvalidPatch, SequenceNotFound

playback_bp = Blueprint('playback', __name__)

# Dependencies injected at registration time
_scheduler = None
_store = None
_audit_log = None


def init_app(scheduler, sequence_store, audit_log_fn):
    """Initialize blueprint with required dependencies."""
    global _scheduler, _store, _audit_log
    _scheduler = scheduler
    _store = sequence_store
    _audit_log = audit_log_fn


@playback_bp.errorhandler(InvalidPatch)
def _invalid(e):
    return jsonify({'success': False, 'error': str(e)}), 400


def _result(accepted, command=None):
    if command and accepted:
        _audit_log('player_command', command=command, sequence_id=_scheduler.cursor.sequence_id)
    return jsonify({'success': True, 'accepted': accepted, 'status': _scheduler.status()})


@playback_bp.route('/api/player/status', methods=['GET'])
def get_player_status():
    return jsonify(_scheduler.status())


@playback_bp.route('/api/player/select', methods=['POST'])
def select_sequence():
    """Select the sequence shown in the player. Does not start playback."""
    data = request.get_json(silent=True) or {}
    sequence_id = data.get('sequence_id')
    if sequence_id and not _store.has_sequence(sequence_id):
        return jsonify({'success': False, 'error': str(SequenceNotFound(sequence_id))}), 404
    _scheduler.select_sequence(sequence_id)
    return _result(True)


@playback_bp.route('/api/player/play', methods=['POST'])
def play():
    """Play the selected sequence, or the one given as sequence_id"""
    data = request.get_json(silent=True) or {}
    sequence_id = data.get('sequence_id')
    if sequence_id and not _store.has_sequence(sequence_id):
        return jsonify({'success': False, 'error': str(SequenceNotFound(sequence_id))}), 404
    return _result(_scheduler.play(sequence_id), 'play')


@playback_bp.route('/api/player/pause', methods=['POST'])
def pause():
    return _result(_scheduler.pause(), 'pause')


@playback_bp.route('/api/player/stop', methods=['POST'])
def stop():
    return _result(_scheduler.stop(), 'stop')


@playback_bp.route('/api/player/next', methods=['POST'])
def next_item():
    return _result(_scheduler.next())


@playback_bp.route('/api/player/previous', methods=['POST'])
def previous_item():
    return _result(_scheduler.previous())


@playback_bp.route('/api/player/jump', methods=['POST'])
def jump():
    data = request.get_json(silent=True) or {}
    index = data.get('index')
    if not isinstance(index, int) or isinstance(index, bool):
        return jsonify({'success': False, 'error': 'index must be an integer'}), 400
    return _result(_scheduler.jump_to(index))


@playback_bp.route('/api/player/loop', methods=['POST'])
def set_loop():
    data = request.get_json(silent=True) or {}
    _scheduler.set_loop(bool(data.get('loop', False)))
    return _result(True)
