"""
SQLite content-record store
Persistent storage with WAL mode for concurrent access from web and job threads

A content record holds the externally generated story text, the media chosen
for it and, once a job finishes, the video / voiceover paths and final status.
"""

import sqlite3
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List
from contextlib import contextmanager
import threading
import logging

logger = logging.getLogger(__name__)

_BACKEND_DIR = Path(__file__).parent.resolve()
_DEFAULT_DB_PATH = _BACKEND_DIR.parent / 'data' / 'content.db'
DB_PATH = Path(os.getenv('DATABASE_PATH', str(_DEFAULT_DB_PATH)))

STATUS_PENDING = 'pending'
STATUS_PROCESSING = 'processing'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'

# Thread-local storage for connections
_local = threading.local()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def configure(db_path: Path):
    """Point the store at another database file (connections reopen lazily)"""
    global DB_PATH
    DB_PATH = Path(db_path)
    logger.info(f"[DB] Path configured: {DB_PATH}")


def get_db_connection() -> sqlite3.Connection:
    """Get thread-local database connection with WAL mode for concurrency"""
    conn = getattr(_local, 'connection', None)
    if conn is not None and getattr(_local, 'path', None) == DB_PATH:
        return conn
    if conn is not None:
        conn.close()

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(DB_PATH),
        check_same_thread=False,
        timeout=30.0  # 30 second timeout for busy database
    )
    conn.row_factory = sqlite3.Row

    # WAL mode is persistent - only needs to be set once per database file
    conn.execute('PRAGMA journal_mode=WAL')
    conn.execute('PRAGMA synchronous=NORMAL')
    conn.execute('PRAGMA busy_timeout=30000')

    _local.connection = conn
    _local.path = DB_PATH
    logger.info(f"[DB] Connected to {DB_PATH} (WAL mode enabled)")
    return conn


@contextmanager
def get_db():
    """Context manager for database operations"""
    conn = get_db_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db():
    """Initialize database tables"""
    with get_db() as conn:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS content_generations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                prompt TEXT,
                generated_text TEXT NOT NULL,
                background_music TEXT,
                background_video TEXT,
                video_url TEXT,
                voiceover_url TEXT,
                status TEXT DEFAULT 'pending',
                error TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_content_status ON content_generations(status)')
    logger.info("[DB] Database initialized")


def check_database_health() -> Dict[str, Any]:
    """Check database health and return status"""
    try:
        conn = get_db_connection()
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        count = conn.execute("SELECT COUNT(*) FROM content_generations").fetchone()[0]
        return {
            'healthy': True,
            'path': str(DB_PATH),
            'journal_mode': journal_mode,
            'content_count': count
        }
    except sqlite3.Error as e:
        logger.error(f"[DB] Health check failed: {e}")
        return {'healthy': False, 'error': str(e), 'path': str(DB_PATH)}

# ==============================================================================
# CONTENT OPERATIONS
# ==============================================================================

def create_content(generated_text: str, prompt: str = None) -> int:
    """Store externally generated story text, returns the new content id"""
    with get_db() as conn:
        cursor = conn.execute('''
            INSERT INTO content_generations (prompt, generated_text)
            VALUES (?, ?)
        ''', (prompt, generated_text))
        return cursor.lastrowid


def get_content(content_id) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        row = conn.execute(
            'SELECT * FROM content_generations WHERE id = ?', (content_id,)
        ).fetchone()
        return dict(row) if row else None


def list_content(limit: int = 50) -> List[Dict[str, Any]]:
    with get_db() as conn:
        rows = conn.execute(
            'SELECT * FROM content_generations ORDER BY id DESC LIMIT ?', (limit,)
        ).fetchall()
        return [dict(r) for r in rows]


def mark_processing(content_id, background_music: str, background_video: str) -> bool:
    """Record the chosen media and flip the record to processing"""
    with get_db() as conn:
        cursor = conn.execute('''
            UPDATE content_generations
            SET background_music = ?, background_video = ?, status = ?,
                video_url = NULL, error = NULL, updated_at = ?
            WHERE id = ?
        ''', (background_music, background_video, STATUS_PROCESSING, _now(), content_id))
        return cursor.rowcount > 0


def mark_completed(content_id, video_url: str, voiceover_url: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute('''
            UPDATE content_generations
            SET video_url = ?, voiceover_url = ?, status = ?, error = NULL, updated_at = ?
            WHERE id = ?
        ''', (video_url, voiceover_url, STATUS_COMPLETED, _now(), content_id))
        return cursor.rowcount > 0


def mark_failed(content_id, error: str = None) -> bool:
    with get_db() as conn:
        cursor = conn.execute('''
            UPDATE content_generations SET status = ?, error = ?, updated_at = ? WHERE id = ?
        ''', (STATUS_FAILED, error, _now(), content_id))
        return cursor.rowcount > 0
