"""
Database module for Mesh Traceroute Monitor
SQLite database setup and CRUD operations
"""

import sqlite3
import json
import time
from contextlib import contextmanager
import config


class RetryableStorageError(Exception):
    """A write could not complete (database locked, busy or I/O error); retry later."""


def now_ms():
    """Return current time as integer epoch milliseconds"""
    return int(time.time() * 1000)


def get_db_path():
    return config.DATABASE_PATH


@contextmanager
def get_connection():
    """Context manager for database connections"""
    conn = sqlite3.connect(get_db_path(), timeout=config.DATABASE_TIMEOUT)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def get_transaction():
    """
    Context manager for a short write transaction.

    Takes the write lock up front (BEGIN IMMEDIATE) so every statement inside
    the block commits or rolls back as one unit. Lock and I/O failures are
    re-raised as RetryableStorageError.
    """
    try:
        conn = sqlite3.connect(get_db_path(), timeout=config.DATABASE_TIMEOUT,
                               isolation_level=None)
    except sqlite3.OperationalError as e:
        raise RetryableStorageError(str(e)) from e
    conn.row_factory = sqlite3.Row
    try:
        conn.execute('BEGIN IMMEDIATE')
        try:
            yield conn
        except Exception:
            conn.execute('ROLLBACK')
            raise
        conn.execute('COMMIT')
    except sqlite3.OperationalError as e:
        if conn.in_transaction:
            conn.execute('ROLLBACK')
        raise RetryableStorageError(str(e)) from e
    finally:
        conn.close()


def init_db():
    """Initialize database tables"""
    with get_connection() as conn:
        cursor = conn.cursor()

        # Nodes table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS nodes (
                node_num INTEGER PRIMARY KEY,
                node_id TEXT,
                long_name TEXT,
                short_name TEXT,
                latitude REAL,
                longitude REAL,
                last_heard INTEGER,
                last_traceroute_request INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        ''')

        # Traceroutes table - one current row per (from, to) pair
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS traceroutes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_node_num INTEGER NOT NULL,
                to_node_num INTEGER NOT NULL,
                from_node_id TEXT,
                to_node_id TEXT,
                route TEXT,
                route_back TEXT,
                snr_towards TEXT,
                snr_back TEXT,
                timestamp INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                UNIQUE(from_node_num, to_node_num)
            )
        ''')

        # Route segments table - append-only observation log
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS route_segments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_node_num INTEGER NOT NULL,
                to_node_num INTEGER NOT NULL,
                from_node_id TEXT,
                to_node_id TEXT,
                distance_km REAL NOT NULL,
                is_record_holder BOOLEAN DEFAULT 0,
                timestamp INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            )
        ''')

        # Settings table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        ''')

        # Events table for logging
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                node_num INTEGER,
                details TEXT,
                severity TEXT DEFAULT 'info'
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_nodes_last_heard ON nodes(last_heard DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_traceroutes_to ON traceroutes(to_node_num)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_traceroutes_timestamp ON traceroutes(timestamp DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_segments_timestamp ON route_segments(timestamp)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_segments_record ON route_segments(is_record_holder)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_segments_distance ON route_segments(distance_km DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp DESC)')


def _to_json(value):
    """Serialize a hop/SNR sequence; None (no response) stays NULL"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(list(value))


# ============ Node Operations ============

def upsert_node(node_num, node_id=None, long_name=None, short_name=None,
                latitude=None, longitude=None, last_heard=None):
    """Insert or update a node from packet ingestion"""
    now = now_ms()
    if node_id is None:
        node_id = f"!{node_num:08x}"
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO nodes (node_num, node_id, long_name, short_name, latitude, longitude,
                               last_heard, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(node_num) DO UPDATE SET
                node_id = COALESCE(excluded.node_id, node_id),
                long_name = COALESCE(excluded.long_name, long_name),
                short_name = COALESCE(excluded.short_name, short_name),
                latitude = COALESCE(excluded.latitude, latitude),
                longitude = COALESCE(excluded.longitude, longitude),
                last_heard = COALESCE(excluded.last_heard, last_heard),
                updated_at = ?
        ''', (node_num, node_id, long_name, short_name, latitude, longitude,
              last_heard, now, now, now))


def get_node(node_num):
    """Get a single node by number"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM nodes WHERE node_num = ?', (node_num,))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_all_nodes():
    """Get all nodes, most recently heard first"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM nodes ORDER BY last_heard DESC')
        return [dict(row) for row in cursor.fetchall()]


def get_nodes_map():
    """Get all nodes keyed by node number"""
    return {node['node_num']: node for node in get_all_nodes()}


def record_traceroute_request(node_num, timestamp=None):
    """Stamp a node with the time we asked for a traceroute (success or not)"""
    if timestamp is None:
        timestamp = now_ms()
    with get_transaction() as conn:
        cursor = conn.execute('''
            UPDATE nodes SET last_traceroute_request = ?, updated_at = ?
            WHERE node_num = ?
        ''', (timestamp, now_ms(), node_num))
        return cursor.rowcount


def get_traceroute_candidates(local_node_num):
    """
    Get every node except the local one, with the hop columns of the current
    traceroute from the local node to it (result_id is NULL when there is none).
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT n.*,
                t.id AS result_id,
                t.route AS result_route,
                t.route_back AS result_route_back
            FROM nodes n
            LEFT JOIN traceroutes t
                ON t.from_node_num = ? AND t.to_node_num = n.node_num
            WHERE n.node_num != ?
            ORDER BY n.last_heard DESC
        ''', (local_node_num, local_node_num))
        return [dict(row) for row in cursor.fetchall()]


# ============ Traceroute Operations ============

def upsert_traceroute(from_node_num, to_node_num, route=None, route_back=None,
                      snr_towards=None, snr_back=None, timestamp=None,
                      from_node_id=None, to_node_id=None):
    """
    Store a traceroute result, replacing any previous result for the same
    (from, to) pair. Hop/SNR sequences of None are stored as NULL (no response).
    """
    now = now_ms()
    if timestamp is None:
        timestamp = now
    if from_node_id is None:
        from_node_id = f"!{from_node_num:08x}"
    if to_node_id is None:
        to_node_id = f"!{to_node_num:08x}"

    with get_transaction() as conn:
        conn.execute('''
            DELETE FROM traceroutes
            WHERE from_node_num = ? AND to_node_num = ?
        ''', (from_node_num, to_node_num))
        cursor = conn.execute('''
            INSERT INTO traceroutes (from_node_num, to_node_num, from_node_id, to_node_id,
                                     route, route_back, snr_towards, snr_back, timestamp, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (from_node_num, to_node_num, from_node_id, to_node_id,
              _to_json(route), _to_json(route_back),
              _to_json(snr_towards), _to_json(snr_back), timestamp, now))
        return cursor.lastrowid


def get_traceroute(from_node_num, to_node_num):
    """Get the current traceroute for an ordered (from, to) pair"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM traceroutes
            WHERE from_node_num = ? AND to_node_num = ?
        ''', (from_node_num, to_node_num))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_traceroutes_between(node_a, node_b, limit=None):
    """Get traceroutes between two nodes in either direction, newest first"""
    if limit is None:
        limit = config.HISTORY_LIMIT
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM traceroutes
            WHERE (from_node_num = ? AND to_node_num = ?)
               OR (from_node_num = ? AND to_node_num = ?)
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        ''', (node_a, node_b, node_b, node_a, limit))
        return [dict(row) for row in cursor.fetchall()]


def get_traceroutes_for_node(node_num, since=None, limit=None):
    """Get traceroutes where a node is either endpoint, newest first"""
    if limit is None:
        limit = config.HISTORY_LIMIT
    if since is None:
        since = 0
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM traceroutes
            WHERE (from_node_num = ? OR to_node_num = ?)
            AND timestamp >= ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        ''', (node_num, node_num, since, limit))
        return [dict(row) for row in cursor.fetchall()]


def get_all_traceroutes(limit=None):
    """Get all current traceroutes, newest first"""
    with get_connection() as conn:
        cursor = conn.cursor()
        if limit:
            cursor.execute('SELECT * FROM traceroutes ORDER BY timestamp DESC, id DESC LIMIT ?', (limit,))
        else:
            cursor.execute('SELECT * FROM traceroutes ORDER BY timestamp DESC, id DESC')
        return [dict(row) for row in cursor.fetchall()]


# ============ Route Segment Operations ============

def insert_route_segment(from_node_num, to_node_num, distance_km, timestamp,
                         from_node_id=None, to_node_id=None, is_record_holder=False):
    """Append a segment row as-is, without touching the record holder flag"""
    with get_transaction() as conn:
        cursor = conn.execute('''
            INSERT INTO route_segments (from_node_num, to_node_num, from_node_id, to_node_id,
                                        distance_km, is_record_holder, timestamp, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (from_node_num, to_node_num, from_node_id, to_node_id,
              distance_km, 1 if is_record_holder else 0, timestamp, now_ms()))
        return cursor.lastrowid


def insert_segment_observation(from_node_num, to_node_num, distance_km, timestamp,
                               from_node_id=None, to_node_id=None):
    """
    Append a segment observation and move the record holder flag to it when
    it is strictly longer than the current record.

    Both statements run in one IMMEDIATE transaction: the first clears the flag
    only from a shorter record, the second flags the new row only if no
    record is left standing. Ties keep the existing holder.
    """
    with get_transaction() as conn:
        conn.execute('''
            UPDATE route_segments SET is_record_holder = 0
            WHERE is_record_holder = 1 AND distance_km < ?
        ''', (distance_km,))
        cursor = conn.execute('''
            INSERT INTO route_segments (from_node_num, to_node_num, from_node_id, to_node_id,
                                        distance_km, is_record_holder, timestamp, created_at)
            VALUES (?, ?, ?, ?, ?,
                    NOT EXISTS (SELECT 1 FROM route_segments WHERE is_record_holder = 1),
                    ?, ?)
        ''', (from_node_num, to_node_num, from_node_id, to_node_id,
              distance_km, timestamp, now_ms()))
        row = conn.execute('SELECT * FROM route_segments WHERE id = ?',
                           (cursor.lastrowid,)).fetchone()
        return dict(row)


def get_record_holder_segment():
    """Get the segment currently flagged as the all-time record"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM route_segments
            WHERE is_record_holder = 1
            ORDER BY distance_km DESC, id ASC
            LIMIT 1
        ''')
        row = cursor.fetchone()
        return dict(row) if row else None


def get_longest_segment_since(since):
    """Get the longest segment observed at or after a timestamp"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM route_segments
            WHERE timestamp >= ?
            ORDER BY distance_km DESC, id ASC
            LIMIT 1
        ''', (since,))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_route_segments(limit=None):
    """Get segment rows, oldest first"""
    with get_connection() as conn:
        cursor = conn.cursor()
        if limit:
            cursor.execute('SELECT * FROM route_segments ORDER BY id ASC LIMIT ?', (limit,))
        else:
            cursor.execute('SELECT * FROM route_segments ORDER BY id ASC')
        return [dict(row) for row in cursor.fetchall()]


def count_record_holders():
    """Count rows carrying the record holder flag (0 or 1 when healthy)"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT COUNT(*) FROM route_segments WHERE is_record_holder = 1')
        return cursor.fetchone()[0]


def cleanup_route_segments(cutoff):
    """Remove non-record segments older than a cutoff timestamp"""
    with get_transaction() as conn:
        cursor = conn.execute('''
            DELETE FROM route_segments
            WHERE timestamp < ? AND is_record_holder = 0
        ''', (cutoff,))
        return cursor.rowcount


# ============ Settings Operations ============

def get_setting(key, default=None):
    """Get a setting value"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT value FROM settings WHERE key = ?', (key,))
        row = cursor.fetchone()
        return row['value'] if row else default


def set_setting(key, value):
    """Set a setting value"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        ''', (key, value))


def get_all_settings():
    """Get all settings as a dictionary"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT key, value FROM settings')
        return {row['key']: row['value'] for row in cursor.fetchall()}


# ============ Event Operations ============

# Event types
EVENT_TRACEROUTE_REQUESTED = 'traceroute_requested'
EVENT_TRACEROUTE_RECEIVED = 'traceroute_received'
EVENT_TRACEROUTE_FAILED = 'traceroute_failed'
EVENT_SEGMENT_RECORD = 'segment_record'


def log_event(event_type, node_num=None, details=None, severity='info'):
    """Log an event to the database"""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO events (timestamp, event_type, node_num, details, severity)
            VALUES (?, ?, ?, ?, ?)
        ''', (now_ms(), event_type, node_num, details, severity))
        return cursor.lastrowid


def get_events(limit=100, offset=0, event_types=None):
    """Get recent events, optionally filtered by type"""
    with get_connection() as conn:
        cursor = conn.cursor()
        if event_types:
            placeholders = ','.join('?' * len(event_types))
            cursor.execute(f'''
                SELECT * FROM events
                WHERE event_type IN ({placeholders})
                ORDER BY timestamp DESC, id DESC
                LIMIT ? OFFSET ?
            ''', (*event_types, limit, offset))
        else:
            cursor.execute('''
                SELECT * FROM events
                ORDER BY timestamp DESC, id DESC
                LIMIT ? OFFSET ?
            ''', (limit, offset))
        return [dict(row) for row in cursor.fetchall()]


def clear_old_events(days=30):
    """Remove events older than specified days"""
    cutoff = now_ms() - days * 24 * 60 * 60 * 1000
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM events WHERE timestamp < ?', (cutoff,))
        return cursor.rowcount
