import sqlite3
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import DATA_ROOT, ensure_data_root

ensure_data_root()

DATA_DIR = DATA_ROOT
DATABASE_FILE = DATA_DIR / 'katomo_crm.db'


def get_db_connection():
    """Establishes a connection to the SQLite database."""
    ensure_data_root()
    conn = sqlite3.connect(str(DATABASE_FILE), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_backups_schema(cursor: sqlite3.Cursor) -> None:
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS backups (
            id TEXT PRIMARY KEY NOT NULL,
            created_at TEXT NOT NULL,
            data TEXT NOT NULL,
            size_bytes INTEGER NOT NULL,
            data_hash TEXT NOT NULL,
            metadata TEXT DEFAULT NULL
        );
    """)

    # Databases created before metadata extraction existed lack the column
    cursor.execute("PRAGMA table_info(backups)")
    backup_columns = {row[1] for row in cursor.fetchall()}
    if 'metadata' not in backup_columns:
        cursor.execute("ALTER TABLE backups ADD COLUMN metadata TEXT DEFAULT NULL")

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_backups_created_at ON backups(created_at)")


def _ensure_storage_entries_schema(cursor: sqlite3.Cursor) -> None:
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS storage_entries (
            key TEXT PRIMARY KEY NOT NULL,
            value TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute(
        "CREATE TRIGGER IF NOT EXISTS update_storage_entries_updated_at AFTER UPDATE ON storage_entries "
        "FOR EACH ROW BEGIN UPDATE storage_entries SET updated_at = CURRENT_TIMESTAMP WHERE key = OLD.key; END;"
    )


def init_db(conn=None):
    """Initializes the database schema."""
    owns_connection = conn is None
    if owns_connection:
        conn = get_db_connection()
    cursor = conn.cursor()
    try:
        _ensure_backups_schema(cursor)
        _ensure_storage_entries_schema(cursor)
        conn.commit()
        logger.info("Database schema ready at %s", DATABASE_FILE)
    finally:
        if owns_connection:
            conn.close()
