import sqlite3
import os
import threading

DB_FILE = os.environ.get('EXPORTER_SIDE_INDEX_DB', '/tmp/bridgex.db')

# Table kinds
SYNAPSE_TABLES = 'SynapseTables'
SYNAPSE_META_TABLES = 'SynapseMetaTables'

_write_lock = threading.Lock()


def get_db_connection():
    conn = sqlite3.connect(DB_FILE, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    conn = get_db_connection()
    cursor = conn.cursor()

    # Destination table ids, one row per (prefix, table kind, key)
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS synapse_tables (
            prefix TEXT NOT NULL,
            table_kind TEXT NOT NULL,
            key_name TEXT NOT NULL,
            key_value TEXT NOT NULL,
            table_id TEXT NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (prefix, table_kind, key_value)
        )
    ''')

    conn.commit()
    conn.close()


class SideIndex:
    """Maps (table kind, key value) to a Synapse table id, namespaced by a prefix"""

    def __init__(self, prefix: str):
        self.prefix = prefix

    def get_table_id(self, table_kind: str, key_value: str):
        conn = get_db_connection()
        try:
            row = conn.execute(
                'SELECT table_id FROM synapse_tables WHERE prefix = ? AND table_kind = ? AND key_value = ?',
                (self.prefix, table_kind, key_value)
            ).fetchone()
        finally:
            conn.close()
        return row['table_id'] if row else None

    def put_table_id(self, table_kind: str, key_name: str, key_value: str, table_id: str):
        with _write_lock:
            conn = get_db_connection()
            try:
                conn.execute(
                    '''INSERT OR REPLACE INTO synapse_tables (prefix, table_kind, key_name, key_value, table_id)
                       VALUES (?, ?, ?, ?, ?)''',
                    (self.prefix, table_kind, key_name, key_value, table_id)
                )
                conn.commit()
            finally:
                conn.close()
