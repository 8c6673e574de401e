#!/usr/bin/env python3
"""
Pixli Core - Sequence playback server for the Pixli generative-art toy

Wires the scene catalog, sequence store, playback scheduler and validation
service behind a Flask REST API and a Socket.IO channel. The renderer (a
browser client) receives `load_scene` events and can drive the player with
`player_command` messages, which is also how remote controls connect.

Configuration (environment):
  PIXLI_DATA_DIR      data directory (default ~/.pixli)
  PIXLI_DB_PATH       SQLite database (default <data dir>/pixli.db)
  PIXLI_API_PORT      HTTP/Socket.IO port (default 8892)
  PIXLI_CORS_ORIGINS  extra allowed origins, comma-separated
  PIXLI_LOG_DIR       audit log directory (default <data dir>/logs)
  PIXLI_LOG_LEVEL     console log level (default INFO)
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO, emit

from blueprints.playback_bp import playback_bp, init_app as playback_init
from blueprints.scenes_bp import scenes_bp, init_app as scenes_init
from blueprints.sequences_bp import sequences_bp, init_app as sequences_init
from scenes import SceneResolver, ScenesManager
from sequence_errors import SequenceError
from sequence_player import PlaybackScheduler
from sequence_validation import ValidationService
from sequences import SequenceStore, SequencesManager

PIXLI_VERSION = "2.0.0"

logger = logging.getLogger("pixli")


# ============================================================
# Configuration
# ============================================================

DATA_DIR = os.environ.get('PIXLI_DATA_DIR', os.path.join(os.path.expanduser("~"), ".pixli"))
DATABASE = os.environ.get('PIXLI_DB_PATH', os.path.join(DATA_DIR, "pixli.db"))
API_PORT = int(os.environ.get('PIXLI_API_PORT', 8892))
LOG_DIR = os.environ.get('PIXLI_LOG_DIR', os.path.join(DATA_DIR, "logs"))
LOG_LEVEL = os.environ.get('PIXLI_LOG_LEVEL', 'INFO').upper()

# Renderer values every loaded scene starts from
DEFAULT_SCENE_STATE = {
    "backgroundColour": "#000000",
    "speed": 1.0,
    "particleCount": 500,
}

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://localhost:8892",
]


def get_allowed_origins():
    """Get list of allowed CORS origins from defaults + environment"""
    origins = DEFAULT_CORS_ORIGINS.copy()
    env_origins = os.environ.get('PIXLI_CORS_ORIGINS', '')
    if env_origins:
        for origin in env_origins.split(','):
            origin = origin.strip()
            if origin and origin not in origins:
                origins.append(origin)
    return origins


# ============================================================
# Logging
# ============================================================

_audit_logger = logging.getLogger('pixli.audit')
_audit_logger.setLevel(logging.INFO)
_audit_logger.propagate = False  # Don't spam console


def setup_logging(level=LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        datefmt='%H:%M:%S',
    )


def setup_audit_log(log_dir):
    """Point the audit logger at <log_dir>/audit.log with rotation"""
    os.makedirs(log_dir, exist_ok=True)
    for handler in list(_audit_logger.handlers):
        _audit_logger.removeHandler(handler)
        handler.close()
    handler = RotatingFileHandler(
        os.path.join(log_dir, 'audit.log'),
        maxBytes=5 * 1024 * 1024,  # 5 MB per file
        backupCount=5,
        encoding='utf-8'
    )
    handler.setFormatter(logging.Formatter('%(asctime)s %(message)s', datefmt='%Y-%m-%dT%H:%M:%S'))
    _audit_logger.addHandler(handler)


def audit_log(event_type, **kwargs):
    """Write a structured audit log entry (one JSON object per line)"""
    entry = json.dumps({'event': event_type, **kwargs}, separators=(',', ':'))
    _audit_logger.info(entry)


# ============================================================
# Application
# ============================================================

def create_app(db_path=None, log_dir=None, default_scene_state=None,
               timer_factory=None, clock=None, cors_origins=None):
    """
    Build the Flask app and Socket.IO server with all services wired.

    Services are exposed on app.extensions['pixli'] for tests and tooling.
    """
    db_path = db_path or DATABASE
    db_dir = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(db_dir, exist_ok=True)
    setup_audit_log(log_dir or LOG_DIR)

    app = Flask(__name__)
    origins = cors_origins or get_allowed_origins()
    CORS(app, resources={r"/api/*": {"origins": origins}})
    socketio = SocketIO(app, cors_allowed_origins=origins, async_mode='threading')

    scenes_manager = ScenesManager(db_path, default_state=default_scene_state or DEFAULT_SCENE_STATE)
    store = SequenceStore(SequencesManager(db_path), scenes_manager)
    resolver = SceneResolver(scenes_manager)
    validation = ValidationService(store, scenes_manager)

    def on_load_scene(event):
        socketio.emit('load_scene', event.to_dict())

    def on_state_change(status):
        socketio.emit('playback_update', {'playback': status})

    def on_sequence_event(event, payload):
        socketio.emit('sequence_update', dict(payload, event=event))

    scheduler_kwargs = {}
    if timer_factory is not None:
        scheduler_kwargs['timer_factory'] = timer_factory
    if clock is not None:
        scheduler_kwargs['clock'] = clock
    scheduler = PlaybackScheduler(store, resolver, on_load_scene=on_load_scene,
                                  on_state_change=on_state_change, **scheduler_kwargs)
    store.subscribe(on_sequence_event)

    scenes_init(scenes_manager, audit_log)
    sequences_init(store, scheduler, validation, audit_log)
    playback_init(scheduler, store, audit_log)

    app.register_blueprint(scenes_bp)
    app.register_blueprint(sequences_bp)
    app.register_blueprint(playback_bp)

    app.extensions['pixli'] = {
        'scenes': scenes_manager,
        'store': store,
        'resolver': resolver,
        'validation': validation,
        'scheduler': scheduler,
        'socketio': socketio,
    }

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({
            'status': 'ok',
            'version': PIXLI_VERSION,
            'sequences': len(store.get_all_sequences()),
            'scenes': len(scenes_manager.get_all_scenes()),
            'playback': scheduler.status()['state'],
        })

    _register_socket_handlers(socketio, scheduler)
    logger.info("✅ Pixli core ready (db: %s)", db_path)
    return app, socketio


# Remote-control commands accepted on the socket
PLAYER_COMMANDS = ('play', 'pause', 'stop', 'next', 'previous', 'jump', 'select', 'loop')


def _register_socket_handlers(socketio, scheduler):

    @socketio.on('connect')
    def handle_connect():
        logger.info("🔌 WebSocket client connected")
        emit('playback_update', {'playback': scheduler.status()})

    @socketio.on('disconnect')
    def handle_disconnect():
        logger.info("🔌 WebSocket client disconnected")

    @socketio.on('player_command')
    def handle_player_command(data):
        """Remote control: {command, index?, sequence_id?, loop?}"""
        data = data if isinstance(data, dict) else {}
        command = data.get('command')
        if command not in PLAYER_COMMANDS:
            emit('player_error', {'error': f'Unknown command: {command}'})
            return

        try:
            if command == 'play':
                accepted = scheduler.play(data.get('sequence_id'))
            elif command == 'jump':
                index = data.get('index')
                if not isinstance(index, int) or isinstance(index, bool):
                    raise TypeError('index must be an integer')
                accepted = scheduler.jump_to(index)
            elif command == 'select':
                scheduler.select_sequence(data.get('sequence_id'))
                accepted = True
            elif command == 'loop':
                scheduler.set_loop(bool(data.get('loop', False)))
                accepted = True
            else:
                accepted = getattr(scheduler, command)()
        except (SequenceError, TypeError, ValueError) as e:
            emit('player_error', {'command': command, 'error': str(e)})
            return

        emit('player_ack', {'command': command, 'accepted': accepted, 'status': scheduler.status()})


# ============================================================
# Main
# ============================================================
if __name__ == '__main__':
    setup_logging()
    print("\n" + "=" * 60)
    print(f"  Pixli Core v{PIXLI_VERSION} - Sequence Playback Server")
    print("=" * 60)
    print(f"  Database: {DATABASE}")
    print(f"  API port: {API_PORT}")
    print("=" * 60 + "\n")

    app, socketio = create_app()
    socketio.run(app, host='0.0.0.0', port=API_PORT, debug=False, allow_unsafe_werkzeug=True)
