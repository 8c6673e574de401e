"""
Pixli - Scenes Blueprint
Routes: /api/scenes/*
Dependencies: scenes_manager, audit_log
"""

from flask import Blueprint, Response, jsonify, request
from sequence_errors import MalformedImport, NameConflict, SceneNotFound

scenes_bp = Blueprint('scenes', __name__)

_scenes_manager = None
_audit_log = None


def init_app(scenes_manager, audit_log_fn):
    """Initialize blueprint with required dependencies."""
    global _scenes_manager, _audit_log
    _scenes_manager = scenes_manager
    _audit_log = audit_log_fn


@scenes_bp.errorhandler(NameConflict)
def _name_conflict(e):
    # The UI asks the user to update the existing scene or pick another name
    body = {'success': False, 'error': str(e)}
    body.update(e.to_dict())
    return jsonify(body), 409


@scenes_bp.errorhandler(SceneNotFound)
def _scene_not_found(e):
    return jsonify({'success': False, 'error': str(e)}), 404


@scenes_bp.errorhandler(MalformedImport)
def _malformed_import(e):
    return jsonify({'success': False, 'error': str(e), 'problems': e.problems}), 400


def _get_scene(scene_id):
    scene = _scenes_manager.get_scene(scene_id)
    if scene is None:
        raise SceneNotFound(scene_id)
    return scene


@scenes_bp.route('/api/scenes', methods=['GET'])
def get_scenes():
    return jsonify([s.to_dict() for s in _scenes_manager.get_all_scenes()])


@scenes_bp.route('/api/scenes', methods=['POST'])
def create_scene():
    """Save renderer state as a scene.

    Body: {name, state, thumbnail?, update_existing_id?}. Pass
    update_existing_id after a 409 to overwrite the conflicting scene.
    """
    data = request.get_json(silent=True) or {}
    state = data.get('state')
    if not isinstance(state, dict):
        return jsonify({'success': False, 'error': 'state must be an object'}), 400

    scene = _scenes_manager.save_scene(
        data.get('name') or '',
        state,
        update_existing_id=data.get('update_existing_id'),
        thumbnail=data.get('thumbnail'),
    )
    _audit_log('scene_saved', scene_id=scene.id, name=scene.name)
    return jsonify({'success': True, 'scene': scene.to_dict()}), 201


@scenes_bp.route('/api/scenes/export', methods=['GET'])
def export_scenes():
    return Response(_scenes_manager.export_scenes_json(), mimetype='application/json')


@scenes_bp.route('/api/scenes/import', methods=['POST'])
def import_scenes():
    imported = _scenes_manager.import_scenes_json(request.get_data(as_text=True))
    return jsonify({'success': True, 'scenes': [s.to_dict() for s in imported]}), 201


@scenes_bp.route('/api/scenes/<scene_id>', methods=['GET'])
def get_scene(scene_id):
    return jsonify(_get_scene(scene_id).to_dict())


@scenes_bp.route('/api/scenes/<scene_id>/state', methods=['GET'])
def get_scene_state(scene_id):
    """Renderable state: stored values merged over renderer defaults"""
    scene = _get_scene(scene_id)
    return jsonify({'scene_id': scene_id, 'state': _scenes_manager.load_scene_state(scene)})


@scenes_bp.route('/api/scenes/<scene_id>', methods=['PUT'])
def update_scene(scene_id):
    """Rename and/or re-snapshot an existing scene"""
    data = request.get_json(silent=True) or {}
    existing = _get_scene(scene_id)
    state = data.get('state', existing.state)
    if not isinstance(state, dict):
        return jsonify({'success': False, 'error': 'state must be an object'}), 400
    scene = _scenes_manager.update_scene(scene_id, data.get('name') or existing.name, state)
    return jsonify({'success': True, 'scene': scene.to_dict()})


@scenes_bp.route('/api/scenes/<scene_id>', methods=['DELETE'])
def delete_scene(scene_id):
    if not _scenes_manager.delete_scene(scene_id):
        raise SceneNotFound(scene_id)
    _audit_log('scene_deleted', scene_id=scene_id)
    return jsonify({'success': True})
