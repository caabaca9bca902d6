"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for network training.

This module provides endpoints for:
- Creating and managing networks
- Training networks with real-time progress updates via WebSockets
- Running predictions on dense or sparse inputs
- Persisting networks to/from the SQLite model store

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for background training tasks
- SQLite for network persistence

Run it directly (``python -m neuro.api_server``) or under gunicorn with
the ``neuro.api_server:init_app()`` factory.
"""

import os
import sys
import uuid
import logging
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from neuro.exceptions import NetworkConfigError, ShapeError
from neuro.model_persistence import ModelDatabase, dumps
from neuro.network import Network, DEFAULT_RATE1, DEFAULT_RATE2

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('neuro').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO pushes training progress to connected clients
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Stored networks older than this are removed by the cleanup task
MAX_AGE_DAYS = float(os.getenv('NEURO_MAX_AGE_DAYS', '2'))

_db: Optional[ModelDatabase] = None


def get_db() -> ModelDatabase:
    """Get or create the model store at NEURO_DB_PATH."""
    global _db
    if _db is None:
        _db = ModelDatabase(os.getenv('NEURO_DB_PATH', 'models/networks.db'))
    return _db


def _network_info(net: Network, trained: bool = False,
                  mse: Optional[float] = None) -> Dict[str, Any]:
    return {
        'network': net,
        'architecture': net.sizes,
        'regression': net.regression,
        'trained': trained,
        'mse': mse,
        'training': False
    }


def get_network_info(network_id: str) -> Optional[Dict[str, Any]]:
    """
    Look a network up in memory, falling back to the model store.

    Networks found in the store are kept in memory afterwards.
    """
    if network_id in active_networks:
        return active_networks[network_id]

    metadata = get_db().get_network_metadata_from_db(network_id)
    if metadata is None:
        return None

    net = get_db().load_network_from_db(network_id)
    if net is None:
        return None

    info = _network_info(net, metadata['trained'], metadata['mse'])
    active_networks[network_id] = info
    return info


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Called at startup so that networks saved before a restart are
    served again.
    """
    saved_networks = get_db().list_networks_from_db()

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        try:
            net = get_db().load_network_from_db(network_id)
        except NetworkConfigError as e:
            logger.error(f"Stored network {network_id} is corrupt: {e}")
            continue

        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue

        active_networks[network_id] = _network_info(
            net, net_info['trained'], net_info['mse']
        )
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately on startup, then every 24 hours to:
    - Delete networks older than MAX_AGE_DAYS from the database
    - Drop deleted networks from memory
    - Remove completed/failed training jobs from memory
    """
    while True:
        try:
            logger.info("Starting automatic cleanup of old networks...")
            deleted_count = get_db().delete_old_networks_from_db(MAX_AGE_DAYS)

            if deleted_count > 0:
                saved_ids = {
                    net['network_id']
                    for net in get_db().list_networks_from_db()
                }
                networks_to_remove = [
                    nid for nid, info in active_networks.items()
                    if nid not in saved_ids and info['trained']
                ]
                for nid in networks_to_remove:
                    del active_networks[nid]
                    logger.info(
                        f"Removed network {nid} from memory "
                        f"(deleted from database)"
                    )

            cleanup_finished_training_jobs()

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def cleanup_finished_training_jobs() -> None:
    """Remove completed or failed training jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    Idempotent: calling it more than once has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


def init_app() -> Flask:
    """Restore stored networks, start background tasks, return the app."""
    reload_saved_networks()
    start_cleanup_task()
    return app


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _busy_response(network_id: str):
    return jsonify({
        'error': f'Network {network_id} is currently training'
    }), 409


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and counts of networks and running jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body:
        {
            'input_count': 2,
            'hidden_count': 3,
            'output_count': 1,
            'regression': false,   # optional
            'rate1': 0.25,         # optional
            'rate2': 0.1,          # optional
            'seed': 42             # optional
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}

    rate1 = data.get('rate1', DEFAULT_RATE1)
    rate2 = data.get('rate2', DEFAULT_RATE2)
    seed = data.get('seed')

    if not _is_number(rate1) or rate1 <= 0:
        return jsonify({'error': 'rate1 must be a positive number'}), 400
    if not _is_number(rate2) or rate2 < 0:
        return jsonify({'error': 'rate2 must be a non-negative number'}), 400
    if seed is not None and (not isinstance(seed, int) or seed < 0):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    try:
        net = Network(
            data.get('input_count'),
            data.get('hidden_count'),
            data.get('output_count'),
            regression=bool(data.get('regression', False)),
            rate1=rate1,
            rate2=rate2,
            rng=np.random.default_rng(seed)
        )
    except NetworkConfigError as e:
        logger.warning(f"Invalid network requested: {e}")
        return jsonify({'error': str(e)}), 400

    network_id = str(uuid.uuid4())
    active_networks[network_id] = _network_info(net)

    logger.info(f"Created network {network_id}: {net!r}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'regression': net.regression,
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and stored)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'regression': info['regression'],
            'trained': info['trained'],
            'mse': info['mse'],
            'status': 'training' if info['training'] else 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    saved_only = []
    for net in get_db().list_networks_from_db():
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def export_network(network_id: str):
    """Return the full JSON document of a network."""
    info = get_network_info(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404
    if info['training']:
        return _busy_response(network_id)

    return app.response_class(dumps(info['network']),
                              mimetype='application/json')


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Run one sample through a network.

    Request body:
        {'input': [0.0, 1.0]}             # dense
        {'input': {'0': 1.0, '7': 0.5}}   # sparse, index -> value
    """
    info = get_network_info(network_id)
    if info is None:
        logger.warning(f"Prediction requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404
    if info['training']:
        return _busy_response(network_id)

    data = request.get_json(silent=True) or {}
    sample = data.get('input')
    if sample is None:
        return jsonify({'error': 'input is required'}), 400

    net = info['network']
    try:
        if isinstance(sample, dict):
            output = net.forward_sparse(sample)
        else:
            output = net.forward(sample)
    except (ShapeError, TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'output': array_to_float_list(output)
    }), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'inputs': [[0, 0], [0, 1]],   # or a list of index -> value maps
            'targets': [[0], [1]],
            'epochs': 100                 # optional
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    info = get_network_info(network_id)
    if info is None:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404
    if info['training']:
        return _busy_response(network_id)

    data = request.get_json(silent=True) or {}
    inputs = data.get('inputs')
    targets = data.get('targets')
    epochs = data.get('epochs', 100)

    if not isinstance(inputs, list) or not isinstance(targets, list):
        return jsonify({'error': 'inputs and targets must be lists'}), 400
    if not isinstance(epochs, int) or isinstance(epochs, bool) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400

    sparse = bool(inputs) and isinstance(inputs[0], dict)
    try:
        info['network'].validate(inputs, targets, sparse=sparse)
    except (ShapeError, TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs,
        'sparse': sparse
    }
    info['training'] = True

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, samples={len(inputs)}, sparse={sparse}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task,
        network_id, job_id, inputs, targets, epochs, sparse
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    inputs: List[Any],
    targets: List[List[float]],
    epochs: int,
    sparse: bool = False
) -> None:
    """
    Background task that trains a network.

    Sends progress updates via WebSocket as training progresses and
    stores the trained network when it finishes.
    """
    info = active_networks[network_id]
    net = info['network']
    job = training_jobs[job_id]

    def on_progress(data: Dict[str, Any]) -> None:
        """Forward training progress to the job record and to clients."""
        progress = ((data['epoch'] - 1 + data['progress'])
                    / data['total_epochs']) * 100

        job['status'] = 'training'
        job['progress'] = progress
        if 'mse' in data:
            job['mse'] = data['mse']

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'event': data['event'],
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'progress': progress,
            'mse': data.get('mse'),
            'elapsed_time': data.get('elapsed_time')
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    def yield_to_other_tasks():
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        train = net.train_sparse if sparse else net.train
        history = train(inputs, targets, epochs,
                        callback=on_progress,
                        yield_func=yield_to_other_tasks)
        mse = history[-1]

        info['trained'] = True
        info['mse'] = mse

        job['status'] = 'completed'
        job['progress'] = 100
        job['mse'] = mse

        get_db().save_network_to_db(net, network_id, trained=True, mse=mse)

        logger.info(f"Training completed for job {job_id}: mse {mse:.5f}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'mse': mse,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        info['training'] = False


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and the model store."""
    info = active_networks.get(network_id)
    if info is not None and info['training']:
        return _busy_response(network_id)

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = get_db().delete_network_from_db(network_id)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all idle networks from both memory and the model store."""
    saved_ids = [net['network_id'] for net in get_db().list_networks_from_db()]
    all_network_ids = set(active_networks) | set(saved_ids)

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0
    skipped = []

    for network_id in all_network_ids:
        info = active_networks.get(network_id)
        if info is not None and info['training']:
            skipped.append(network_id)
            continue

        if active_networks.pop(network_id, None) is not None:
            deleted_from_memory_count += 1
        if get_db().delete_network_from_db(network_id):
            deleted_from_disk_count += 1

    deleted_count = len(all_network_ids) - len(skipped)
    logger.info(
        f"Deleted all networks: {deleted_count} total, "
        f"{deleted_from_memory_count} from memory, "
        f"{deleted_from_disk_count} from disk, {len(skipped)} busy"
    )

    return jsonify({
        'deleted_count': deleted_count,
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count,
        'skipped': skipped,
        'message': f'Successfully deleted {deleted_count} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of stored networks older than `days`.

    Request body (optional):
        {'days': 2}  # defaults to NEURO_MAX_AGE_DAYS
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', MAX_AGE_DAYS)

    if not _is_number(days) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    try:
        deleted_count = get_db().delete_old_networks_from_db(days)
    except Exception as e:
        logger.exception(f"Error during manual cleanup: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    init_app()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
