"""
Pixli - Sequences Blueprint
Routes: /api/sequences/*
Dependencies: sequence_store, scheduler, validation_service, audit_log
"""

from flask import Blueprint, Response, jsonify, request
from sequence_errors import (
    InvalidPatch,
    ItemNotFound,
    MalformedImport,
    NoScenesAvailable,
    SequenceNotFound,
)
from sequence_transfer import export_sequence_json, export_sequences_json, import_sequences_json
from sequences import validate_sequence_data

sequences_bp = Blueprint('sequences', __name__)

_store = None
_scheduler = None
_validation = None
_audit_log = None


def init_app(sequence_store, scheduler, validation_service, audit_log_fn):
    """Initialize blueprint with required dependencies."""
    global _store, _scheduler, _validation, _audit_log
    _store = sequence_store
    _scheduler = scheduler
    _validation = validation_service
    _audit_log = audit_log_fn


def _is_index(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _error(message, status, **extra):
    body = {'success': False, 'error': message}
    body.update(extra)
    return jsonify(body), status


@sequences_bp.errorhandler(SequenceNotFound)
def _sequence_not_found(e):
    return _error(str(e), 404)


@sequences_bp.errorhandler(ItemNotFound)
def _item_not_found(e):
    return _error(str(e), 404)


@sequences_bp.errorhandler(InvalidPatch)
def _invalid_patch(e):
    return _error(str(e), 400)


@sequences_bp.errorhandler(NoScenesAvailable)
def _no_scenes(e):
    # Rendered by the UI as a disabled "add scene" control
    return _error(str(e), 409, disabled=True)


@sequences_bp.errorhandler(MalformedImport)
def _malformed_import(e):
    return _error(str(e), 400, problems=e.problems)


# ─────────────────────────────────────────────────────────
# Sequence CRUD
# ─────────────────────────────────────────────────────────

@sequences_bp.route('/api/sequences', methods=['GET'])
def get_sequences():
    """Get all Sequences"""
    return jsonify([s.to_dict() for s in _store.get_all_sequences()])


@sequences_bp.route('/api/sequences', methods=['POST'])
def create_sequence():
    """Create a new Sequence.

    Body is either a full sequence record ({name, scenes: [...]}) or
    {name, scene_ids: [...]} to build one manual item per scene.
    """
    data = request.get_json(silent=True) or {}

    if 'scene_ids' in data:
        scene_ids = data.get('scene_ids') or []
        if not isinstance(scene_ids, list):
            return _error('scene_ids must be a list', 400)
        sequence = _store.create_sequence(data.get('name', ''), scene_ids)
    else:
        valid, error = validate_sequence_data(data)
        if not valid:
            return _error(error, 400)
        record = dict(data)
        record.pop('id', None)
        sequence = _store.save_sequence(record)

    _audit_log('sequence_created', sequence_id=sequence.id, name=sequence.name)
    return jsonify({'success': True, 'sequence': sequence.to_dict()}), 201


@sequences_bp.route('/api/sequences/stats', methods=['GET'])
def get_sequence_stats():
    return jsonify(_store.sequence_stats())


@sequences_bp.route('/api/sequences/export', methods=['GET'])
def export_all_sequences():
    return Response(export_sequences_json(_store.get_all_sequences()), mimetype='application/json')


@sequences_bp.route('/api/sequences/validate', methods=['GET'])
def validate_all_sequences():
    """Validation report for every stored sequence, keyed by id"""
    results = _validation.validate_all()
    return jsonify({sequence_id: result.to_dict() for sequence_id, result in results.items()})


@sequences_bp.route('/api/sequences/import', methods=['POST'])
def import_sequences():
    """Import one or more sequences (legacy or current JSON shape)"""
    text = request.get_data(as_text=True)
    imported = import_sequences_json(_store, text)
    _audit_log('sequences_imported', count=len(imported), ids=[s.id for s in imported])
    return jsonify({'success': True, 'sequences': [s.to_dict() for s in imported]}), 201


@sequences_bp.route('/api/sequences/<sequence_id>', methods=['GET'])
def get_sequence(sequence_id):
    return jsonify(_store.get_sequence(sequence_id).to_dict())


@sequences_bp.route('/api/sequences/<sequence_id>', methods=['PATCH'])
def update_sequence(sequence_id):
    """Update sequence-level fields (name, description, colour, default fade)"""
    data = request.get_json(silent=True) or {}
    changed = _store.update_sequence(sequence_id, data)
    return jsonify({'success': True, 'changed': changed,
                    'sequence': _store.get_sequence(sequence_id).to_dict()})


@sequences_bp.route('/api/sequences/<sequence_id>', methods=['DELETE'])
def delete_sequence(sequence_id):
    if not _store.delete_sequence(sequence_id):
        return _error(f'Sequence not found: {sequence_id}', 404)
    _audit_log('sequence_deleted', sequence_id=sequence_id)
    return jsonify({'success': True})


@sequences_bp.route('/api/sequences/<sequence_id>/duplicate', methods=['POST'])
def duplicate_sequence(sequence_id):
    duplicate = _store.duplicate_sequence(sequence_id)
    return jsonify({'success': True, 'sequence': duplicate.to_dict()}), 201


@sequences_bp.route('/api/sequences/<sequence_id>/export', methods=['GET'])
def export_sequence(sequence_id):
    sequence = _store.get_sequence(sequence_id)
    return Response(export_sequence_json(sequence), mimetype='application/json')


@sequences_bp.route('/api/sequences/<sequence_id>/validate', methods=['GET'])
def validate_sequence(sequence_id):
    """Report dangling scene references"""
    return jsonify(_validation.validate(sequence_id).to_dict())


# ─────────────────────────────────────────────────────────
# Items (routed through the scheduler so the playing pointer follows)
# ─────────────────────────────────────────────────────────

@sequences_bp.route('/api/sequences/<sequence_id>/items', methods=['POST'])
def add_item(sequence_id):
    """Append an item. Body: {scene_id} or {inline_scene}, plus optional item fields"""
    data = dict(request.get_json(silent=True) or {})
    inline_scene = data.pop('inline_scene', None)
    scene_id = data.pop('scene_id', None)
    scene_ref = inline_scene or scene_id
    if scene_ref is None:
        return _error('scene_id or inline_scene is required', 400)
    item = _scheduler.add_item(scene_ref, data or None, sequence_id=sequence_id)
    return jsonify({'success': True, 'item': item.to_dict(sequence_id)}), 201


@sequences_bp.route('/api/sequences/<sequence_id>/items/<item_id>', methods=['PATCH'])
def update_item(sequence_id, item_id):
    data = request.get_json(silent=True) or {}
    changed = _scheduler.update_item(item_id, data, sequence_id=sequence_id)
    return jsonify({'success': True, 'changed': changed})


@sequences_bp.route('/api/sequences/<sequence_id>/items/<item_id>', methods=['DELETE'])
def delete_item(sequence_id, item_id):
    index = _scheduler.delete_item(item_id, sequence_id=sequence_id)
    return jsonify({'success': True, 'index': index})


@sequences_bp.route('/api/sequences/<sequence_id>/reorder', methods=['POST'])
def reorder_items(sequence_id):
    """Move an item. Body: {from_index, to_index} (to_index is post-removal)"""
    data = request.get_json(silent=True) or {}
    from_index = data.get('from_index')
    to_index = data.get('to_index')
    if not _is_index(from_index) or not _is_index(to_index):
        return _error('from_index and to_index must be integers', 400)
    sequence = _scheduler.reorder(from_index, to_index, sequence_id=sequence_id)
    return jsonify({'success': True, 'sequence': sequence.to_dict()})
