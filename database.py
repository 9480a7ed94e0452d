import sqlite3
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import DATA_ROOT, ensure_data_root

DATA_DIR = DATA_ROOT
DATABASE_FILENAME = 'storefront.db'

COLLECTIONS = ('products', 'orders')


class DocumentNotFoundError(LookupError):
    """Raised when a document id does not exist in its collection."""

    def __init__(self, collection: str, document_id: str):
        super().__init__(f"No {collection[:-1]} found with id '{document_id}'")
        self.collection = collection
        self.document_id = document_id


def _database_file():
    return DATA_DIR / DATABASE_FILENAME


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection '{collection}'")


def get_db_connection():
    """Establishes a connection to the SQLite database."""
    ensure_data_root()
    conn = sqlite3.connect(str(_database_file()), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    """Initializes the database schema."""
    conn = get_db_connection()
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                body TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_created ON documents (collection, created_at)"
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("Document store ready at %s", _database_file())


def _row_to_document(row: sqlite3.Row) -> Dict[str, Any]:
    document = json.loads(row['body'])
    document['id'] = row['id']
    document['createdAt'] = row['created_at']
    document['updatedAt'] = row['updated_at']
    return document


def insert_document(conn: sqlite3.Connection, collection: str, body: Dict[str, Any],
                    document_id: Optional[str] = None) -> Dict[str, Any]:
    _check_collection(collection)
    document_id = document_id or uuid.uuid4().hex
    payload = {k: v for k, v in body.items() if k not in ('id', 'createdAt', 'updatedAt')}
    now = _utcnow()
    conn.execute(
        "INSERT INTO documents (collection, id, body, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (collection, document_id, json.dumps(payload), now, now),
    )
    conn.commit()
    return get_document(conn, collection, document_id)


def get_document(conn: sqlite3.Connection, collection: str, document_id: str) -> Dict[str, Any]:
    _check_collection(collection)
    row = conn.execute(
        "SELECT id, body, created_at, updated_at FROM documents WHERE collection = ? AND id = ?",
        (collection, document_id),
    ).fetchone()
    if row is None:
        raise DocumentNotFoundError(collection, document_id)
    return _row_to_document(row)


def list_documents(conn: sqlite3.Connection, collection: str, limit: int = 200) -> List[Dict[str, Any]]:
    """Return the newest documents of a collection first."""
    _check_collection(collection)
    rows = conn.execute(
        "SELECT id, body, created_at, updated_at FROM documents "
        "WHERE collection = ? ORDER BY created_at DESC, id LIMIT ?",
        (collection, limit),
    ).fetchall()
    return [_row_to_document(row) for row in rows]


def find_document(conn: sqlite3.Connection, collection: str, field: str, value: Any) -> Dict[str, Any]:
    """Return the newest document whose top-level ``field`` equals ``value``."""
    _check_collection(collection)
    row = conn.execute(
        "SELECT id, body, created_at, updated_at FROM documents "
        "WHERE collection = ? AND json_extract(body, ?) = ? ORDER BY created_at DESC LIMIT 1",
        (collection, f'$."{field}"', value),
    ).fetchone()
    if row is None:
        raise DocumentNotFoundError(collection, f"{field}={value}")
    return _row_to_document(row)


def update_document(conn: sqlite3.Connection, collection: str, document_id: str,
                    changes: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow-merge ``changes`` into an existing document."""
    existing = get_document(conn, collection, document_id)
    merged = {k: v for k, v in existing.items() if k not in ('id', 'createdAt', 'updatedAt')}
    merged.update({k: v for k, v in changes.items() if k not in ('id', 'createdAt', 'updatedAt')})
    conn.execute(
        "UPDATE documents SET body = ?, updated_at = ? WHERE collection = ? AND id = ?",
        (json.dumps(merged), _utcnow(), collection, document_id),
    )
    conn.commit()
    return get_document(conn, collection, document_id)


def delete_document(conn: sqlite3.Connection, collection: str, document_id: str) -> None:
    _check_collection(collection)
    cursor = conn.execute(
        "DELETE FROM documents WHERE collection = ? AND id = ?",
        (collection, document_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        raise DocumentNotFoundError(collection, document_id)
