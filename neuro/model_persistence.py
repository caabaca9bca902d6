"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

Persistence for networks.

A network is stored as a JSON document holding every piece of its state
(layers, weights, momentum and error buffers, flags and rates). Layer
sizes are implied by the array lengths. The same document is used for
plain files (`save`/`load`) and for the SQLite model store
(`ModelDatabase`), which adds queryable metadata next to it.
"""

import json
import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

import numpy as np

from neuro.exceptions import NetworkConfigError
from neuro.network import Network

# Configure module logger
logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

ARRAY_FIELDS = (
    'input_layer',
    'hidden_layer',
    'output_layer',
    'weight_hidden',
    'weight_output',
    'last_change_hidden',
    'last_change_output',
    'err_output',
    'err_hidden',
)


class NetworkEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


# ============================================================================
# DOCUMENT CODEC
# ============================================================================

def network_to_dict(network: Network) -> Dict[str, Any]:
    """
    Capture the full state of a network.

    The arrays are copied, so later training does not alter the result.
    """
    doc: Dict[str, Any] = {
        'format_version': FORMAT_VERSION,
        'regression': network.regression,
        'rate1': network.rate1,
        'rate2': network.rate2,
    }
    for field in ARRAY_FIELDS:
        doc[field] = getattr(network, field).copy()
    return doc


def network_from_dict(
    doc: Dict[str, Any],
    rng: Optional[np.random.Generator] = None
) -> Network:
    """
    Rebuild a network from a document made by `network_to_dict`.

    Args:
        doc: Parsed document
        rng: Random source for any further training

    Returns:
        Network: A fully populated network

    Raises:
        NetworkConfigError: If fields are missing or array shapes
            disagree with each other
    """
    if not isinstance(doc, dict):
        raise NetworkConfigError(
            f"Network document must be an object, got {type(doc).__name__}"
        )

    version = doc.get('format_version')
    if version != FORMAT_VERSION:
        raise NetworkConfigError(
            f"Unsupported network format version: {version!r}"
        )

    missing = [key for key in ('regression', 'rate1', 'rate2') + ARRAY_FIELDS
               if key not in doc]
    if missing:
        raise NetworkConfigError(f"Network document is missing {missing}")

    if not isinstance(doc['regression'], bool):
        raise NetworkConfigError(
            f"Field 'regression' must be true or false, "
            f"got {doc['regression']!r}"
        )

    arrays = {}
    for field in ARRAY_FIELDS:
        try:
            arrays[field] = np.array(doc[field], dtype=float)
        except (TypeError, ValueError) as e:
            raise NetworkConfigError(f"Field '{field}' is malformed: {e}") from e

    for field in ('input_layer', 'hidden_layer', 'output_layer'):
        if arrays[field].ndim != 1:
            raise NetworkConfigError(f"Field '{field}' must be a flat list")

    network = Network(
        len(arrays['input_layer']) - 1,
        len(arrays['hidden_layer']) - 1,
        len(arrays['output_layer']),
        regression=doc['regression'],
        rate1=float(doc['rate1']),
        rate2=float(doc['rate2']),
        rng=rng
    )

    # The freshly built network has the shapes every field must match
    for field, values in arrays.items():
        expected = getattr(network, field).shape
        if values.shape != expected:
            raise NetworkConfigError(
                f"Field '{field}' has shape {values.shape}, "
                f"expected {expected} for sizes {network.sizes}"
            )
        setattr(network, field, values)

    return network


def dumps(network: Network, indent: Optional[int] = None) -> str:
    """Serialize a network to JSON text."""
    return json.dumps(network_to_dict(network), cls=NetworkEncoder,
                      indent=indent)


def loads(text: str, rng: Optional[np.random.Generator] = None) -> Network:
    """
    Rebuild a network from JSON text.

    Raises:
        NetworkConfigError: If the text is not a valid network document
    """
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise NetworkConfigError(f"Invalid network JSON: {e}") from e
    return network_from_dict(doc, rng=rng)


def save(network: Network, path: str) -> None:
    """
    Write a network to a JSON file.

    The document is written to a temporary file next to `path` and then
    renamed over it, so a failed save leaves any existing file intact.
    The file gets the same permissions `open()` would give it.

    Raises:
        OSError: If the file cannot be written
    """
    text = dumps(network, indent=2)
    directory = os.path.dirname(os.path.abspath(path))

    # mkstemp creates owner-only files
    umask = os.umask(0)
    os.umask(umask)

    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(text)
        os.chmod(tmp_path, 0o666 & ~umask)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    logger.info(f"Saved {network!r} to {path}")


def load(path: str, rng: Optional[np.random.Generator] = None) -> Network:
    """
    Read a network from a JSON file.

    Raises:
        OSError: If the file cannot be read
        NetworkConfigError: If the file is not a valid network document
    """
    with open(path) as f:
        text = f.read()

    network = loads(text, rng=rng)
    logger.info(f"Loaded {network!r} from {path}")
    return network


# ============================================================================
# SQLITE MODEL STORE
# ============================================================================

class ModelDatabase:
    """
    Manages SQLite database for network persistence.

    The database stores:
    - Network metadata (architecture, output mode, training status, MSE)
    - The JSON network document
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back and re-raises on failure.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    regression INTEGER NOT NULL DEFAULT 0,
                    network_data TEXT NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    mse REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        architecture = json.loads(row['architecture'])
        n_input, n_hidden, n_output = architecture

        return {
            'network_id': row['network_id'],
            'architecture': architecture,
            'regression': bool(row['regression']),
            # Bias units add one column (and one hidden row) to each matrix
            'weights_shape': [
                [n_hidden + 1, n_input + 1],
                [n_output, n_hidden + 1]
            ],
            'trained': bool(row['trained']),
            'mse': row['mse'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        mse: Optional[float] = None
    ) -> bool:
        """
        Save a network to the database, replacing any with the same id.

        Args:
            network: Network to save
            network_id: Unique identifier for the network
            trained: Whether the network has been trained
            mse: Mean squared error of the last training epoch

        Returns:
            bool: True once the row is written

        Raises:
            ValueError: If the id is empty or mse is negative
        """
        if not network_id or not isinstance(network_id, str):
            raise ValueError("network_id must be a non-empty string")
        if mse is not None and mse < 0:
            raise ValueError(f"mse must be non-negative, got {mse}")

        network_data = dumps(network)
        architecture_json = json.dumps(network.sizes)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, regression, network_data,
                 trained, mse, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    regression = excluded.regression,
                    network_data = excluded.network_data,
                    trained = excluded.trained,
                    mse = excluded.mse,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                architecture_json,
                1 if network.regression else 0,
                network_data,
                1 if trained else 0,
                None if mse is None else float(mse)
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, mse={mse}"
        )
        return True

    def load_network_from_db(
        self,
        network_id: str,
        rng: Optional[np.random.Generator] = None
    ) -> Optional[Network]:
        """
        Load a network from the database.

        Returns:
            Network object or None if not found

        Raises:
            NetworkConfigError: If the stored document is corrupt
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = loads(row['network_data'], rng=rng)
        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """List all networks with metadata, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, regression, trained, mse,
                       created_at, updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')
            networks = [self._row_to_metadata(row)
                        for row in cursor.fetchall()]

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get network metadata without loading the network itself."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, regression, trained, mse,
                       created_at, updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Metadata for network '{network_id}' not found")
            return None
        return self._row_to_metadata(row)

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network from the database.

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(
                f"Could not delete network '{network_id}': not found"
            )
        return deleted

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete networks created more than `days` days ago.

        Returns:
            int: Number of deleted networks

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM networks WHERE created_at < datetime('now', ?)",
                (f'-{days} days',)
            )
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted
