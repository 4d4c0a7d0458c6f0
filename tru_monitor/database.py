import contextlib
import datetime
import enum
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from .config import (DATABASE_FILE, DB_CONNECTION_TIMEOUT, DB_HISTORY_RETENTION_DAYS,
                     DB_RECORDS_RETENTION_DAYS, NODE_LIVENESS_MINUTES)
from .db_utils import retry_on_db_lock, get_optimized_connection
from .errors import InvalidDistributionError

log = logging.getLogger("TruMonitor.Database")


SCHEMA = [
    # Unique tasks seen across the network, deduplicated by task_id_hash
    '''
    CREATE TABLE IF NOT EXISTS aggregated_tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id_hash TEXT UNIQUE NOT NULL,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        chain_id TEXT,
        task_type TEXT,
        status TEXT DEFAULT 'received',
        success INTEGER,
        execution_time_bucket TEXT,
        gas_used_bucket TEXT,
        cached INTEGER,
        reporting_nodes INTEGER DEFAULT 1
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS aggregated_invoices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        invoice_id_hash TEXT UNIQUE NOT NULL,
        task_id_hash TEXT,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        chain_id TEXT,
        steps_computed_bucket TEXT,
        memory_used_bucket TEXT,
        operation TEXT,
        reporting_nodes INTEGER DEFAULT 1
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS active_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        node_id TEXT UNIQUE NOT NULL,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        status TEXT DEFAULT 'online',
        total_tasks_bucket TEXT,
        active_tasks_bucket TEXT,
        heartbeat_count INTEGER DEFAULT 1
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS network_stats_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recorded_at TEXT NOT NULL,
        active_nodes INTEGER,
        total_nodes INTEGER,
        total_tasks INTEGER,
        completed_tasks INTEGER,
        failed_tasks INTEGER,
        cached_tasks INTEGER,
        total_invoices INTEGER,
        success_rate REAL,
        cache_hit_rate REAL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_tasks_status ON aggregated_tasks(status)',
    'CREATE INDEX IF NOT EXISTS idx_tasks_first_seen ON aggregated_tasks(first_seen_at)',
    'CREATE INDEX IF NOT EXISTS idx_tasks_last_seen ON aggregated_tasks(last_seen_at)',
    'CREATE INDEX IF NOT EXISTS idx_invoices_task ON aggregated_invoices(task_id_hash)',
    'CREATE INDEX IF NOT EXISTS idx_invoices_last_seen ON aggregated_invoices(last_seen_at)',
    'CREATE INDEX IF NOT EXISTS idx_nodes_last_seen ON active_nodes(last_seen_at)',
    'CREATE INDEX IF NOT EXISTS idx_stats_recorded ON network_stats_history(recorded_at)',
]


class DistributionMetric(enum.Enum):
    """The only (table, column) pairs a distribution query may touch."""
    EXECUTION_TIME = ('aggregated_tasks', 'execution_time_bucket')
    GAS_USED = ('aggregated_tasks', 'gas_used_bucket')
    CHAIN = ('aggregated_tasks', 'chain_id')
    TASK_TYPE = ('aggregated_tasks', 'task_type')
    STEPS_COMPUTED = ('aggregated_invoices', 'steps_computed_bucket')
    MEMORY_USED = ('aggregated_invoices', 'memory_used_bucket')

    @property
    def table(self):
        return self.value[0]

    @property
    def column(self):
        return self.value[1]


def resolve_distribution(metric, entity_kind: Optional[str] = None) -> DistributionMetric:
    """
    Maps a caller-supplied (column, table) pair onto the allow-list. Raises
    InvalidDistributionError before any SQL is built.
    """
    if isinstance(metric, DistributionMetric):
        if entity_kind is not None and entity_kind != metric.table:
            raise InvalidDistributionError(metric.column, entity_kind)
        return metric
    table = entity_kind or 'aggregated_tasks'
    for candidate in DistributionMetric:
        if candidate.value == (table, metric):
            return candidate
    raise InvalidDistributionError(metric, entity_kind)


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _iso(value: datetime.datetime) -> str:
    return value.astimezone(datetime.timezone.utc).isoformat()


def _rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 1)


class AggregatorStore:
    """
    Network-wide view built from federation messages. Every record is keyed by
    an anonymous identifier; repeats from other nodes only bump reporting_nodes.

    All methods block and are meant to be called through run_in_executor.
    """

    def __init__(self, db_path: str = None, clock: Callable[[], datetime.datetime] = None,
                 timeout: float = DB_CONNECTION_TIMEOUT):
        self.db_path = db_path or DATABASE_FILE
        self.timeout = timeout
        self._clock = clock or _utc_now

    def _now(self) -> str:
        return _iso(self._clock())

    def _connect(self) -> sqlite3.Connection:
        return get_optimized_connection(self.db_path, timeout=self.timeout)

    def init_db(self):
        log.info(f"Connecting to database '{self.db_path}' and checking schema...")
        with contextlib.closing(self._connect()) as conn, conn:
            for statement in SCHEMA:
                conn.execute(statement)
        log.info("Database schema is ready.")

    # --- Writes ---

    @retry_on_db_lock()
    def upsert_task(self, task_id_hash: str, chain_id: Optional[str] = None,
                    task_type: Optional[str] = None) -> int:
        now = self._now()
        with contextlib.closing(self._connect()) as conn, conn:
            cursor = conn.execute('''
                INSERT INTO aggregated_tasks (task_id_hash, first_seen_at, last_seen_at, chain_id, task_type, status)
                VALUES (?, ?, ?, ?, ?, 'received')
                ON CONFLICT(task_id_hash) DO UPDATE SET
                    last_seen_at = excluded.last_seen_at,
                    reporting_nodes = reporting_nodes + 1
            ''', (task_id_hash, now, now, chain_id, task_type))
            return cursor.rowcount

    @retry_on_db_lock()
    def update_task_completed(self, task_id_hash: str, status: Optional[str] = None, success: bool = False,
                              time_bucket: Optional[str] = None, gas_bucket: Optional[str] = None,
                              cached: bool = False) -> int:
        """Returns the number of rows touched; 0 when the task was never received."""
        with contextlib.closing(self._connect()) as conn, conn:
            cursor = conn.execute('''
                UPDATE aggregated_tasks SET
                    status = ?, success = ?, execution_time_bucket = ?, gas_used_bucket = ?,
                    cached = ?, last_seen_at = ?
                WHERE task_id_hash = ?
            ''', (status or 'completed', 1 if success else 0, time_bucket, gas_bucket,
                  1 if cached else 0, self._now(), task_id_hash))
            if cursor.rowcount == 0:
                log.debug(f"Completion for unknown task {task_id_hash[:12]} ignored")
            return cursor.rowcount

    @retry_on_db_lock()
    def upsert_invoice(self, invoice_id_hash: str, task_id_hash: Optional[str] = None,
                       chain_id: Optional[str] = None, steps_bucket: Optional[str] = None,
                       memory_bucket: Optional[str] = None, operation: Optional[str] = None) -> int:
        now = self._now()
        with contextlib.closing(self._connect()) as conn, conn:
            cursor = conn.execute('''
                INSERT INTO aggregated_invoices (invoice_id_hash, task_id_hash, first_seen_at, last_seen_at,
                                                 chain_id, steps_computed_bucket, memory_used_bucket, operation)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(invoice_id_hash) DO UPDATE SET
                    last_seen_at = excluded.last_seen_at,
                    reporting_nodes = reporting_nodes + 1
            ''', (invoice_id_hash, task_id_hash, now, now, chain_id, steps_bucket, memory_bucket, operation))
            return cursor.rowcount

    @retry_on_db_lock()
    def upsert_node(self, node_id: str, status: str = 'online', total_tasks_bucket: Optional[str] = None,
                    active_tasks_bucket: Optional[str] = None) -> int:
        now = self._now()
        with contextlib.closing(self._connect()) as conn, conn:
            cursor = conn.execute('''
                INSERT INTO active_nodes (node_id, first_seen_at, last_seen_at, status,
                                          total_tasks_bucket, active_tasks_bucket)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(node_id) DO UPDATE SET
                    last_seen_at = excluded.last_seen_at,
                    status = excluded.status,
                    total_tasks_bucket = COALESCE(excluded.total_tasks_bucket, total_tasks_bucket),
                    active_tasks_bucket = COALESCE(excluded.active_tasks_bucket, active_tasks_bucket),
                    heartbeat_count = heartbeat_count + 1
            ''', (node_id, now, now, status or 'online', total_tasks_bucket, active_tasks_bucket))
            return cursor.rowcount

    # --- Reads ---

    def get_task(self, task_id_hash: str) -> Optional[Dict[str, Any]]:
        with contextlib.closing(self._connect()) as conn:
            row = conn.execute('SELECT * FROM aggregated_tasks WHERE task_id_hash = ?', (task_id_hash,)).fetchone()
            return dict(row) if row else None

    def get_invoice(self, invoice_id_hash: str) -> Optional[Dict[str, Any]]:
        with contextlib.closing(self._connect()) as conn:
            row = conn.execute('SELECT * FROM aggregated_invoices WHERE invoice_id_hash = ?',
                               (invoice_id_hash,)).fetchone()
            return dict(row) if row else None

    def get_node(self, node_id: str) -> Optional[Dict[str, Any]]:
        with contextlib.closing(self._connect()) as conn:
            row = conn.execute('SELECT * FROM active_nodes WHERE node_id = ?', (node_id,)).fetchone()
            return dict(row) if row else None

    def distribution(self, metric, entity_kind: Optional[str] = None) -> Dict[str, int]:
        resolved = resolve_distribution(metric, entity_kind)
        # Identifiers come from the enum, never from the caller.
        query = (f"SELECT {resolved.column} AS bucket, COUNT(*) AS count FROM {resolved.table} "
                 f"WHERE {resolved.column} IS NOT NULL GROUP BY {resolved.column}")
        with contextlib.closing(self._connect()) as conn:
            return {row['bucket']: row['count'] for row in conn.execute(query)}

    def count_active_nodes(self) -> int:
        cutoff = _iso(self._clock() - datetime.timedelta(minutes=NODE_LIVENESS_MINUTES))
        with contextlib.closing(self._connect()) as conn:
            return conn.execute('SELECT COUNT(*) FROM active_nodes WHERE last_seen_at > ?', (cutoff,)).fetchone()[0]

    def compute_aggregated_stats(self) -> Dict[str, Any]:
        day_ago = _iso(self._clock() - datetime.timedelta(hours=24))
        with contextlib.closing(self._connect()) as conn:
            tasks = conn.execute('''
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed,
                       COALESCE(SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END), 0) AS failed,
                       COALESCE(SUM(CASE WHEN cached = 1 THEN 1 ELSE 0 END), 0) AS cached
                FROM aggregated_tasks
            ''').fetchone()
            tasks_last_24h = conn.execute('SELECT COUNT(*) FROM aggregated_tasks WHERE first_seen_at > ?',
                                          (day_ago,)).fetchone()[0]
            total_invoices = conn.execute('SELECT COUNT(*) FROM aggregated_invoices').fetchone()[0]
            invoices_last_24h = conn.execute('SELECT COUNT(*) FROM aggregated_invoices WHERE first_seen_at > ?',
                                             (day_ago,)).fetchone()[0]
            total_nodes = conn.execute('SELECT COUNT(*) FROM active_nodes').fetchone()[0]

        return {
            'activeNodes': self.count_active_nodes(),
            'totalNodes': total_nodes,
            'totalTasks': tasks['total'],
            'completedTasks': tasks['completed'],
            'failedTasks': tasks['failed'],
            'cachedTasks': tasks['cached'],
            'tasksLast24h': tasks_last_24h,
            'totalInvoices': total_invoices,
            'invoicesLast24h': invoices_last_24h,
            'successRate': _rate(tasks['completed'], tasks['total']),
            'cacheHitRate': _rate(tasks['cached'], tasks['completed']),
            'executionTimeDistribution': self.distribution(DistributionMetric.EXECUTION_TIME),
            'gasUsageDistribution': self.distribution(DistributionMetric.GAS_USED),
            'stepsComputedDistribution': self.distribution(DistributionMetric.STEPS_COMPUTED),
            'memoryUsedDistribution': self.distribution(DistributionMetric.MEMORY_USED),
            'chainDistribution': self.distribution(DistributionMetric.CHAIN),
            'taskTypeDistribution': self.distribution(DistributionMetric.TASK_TYPE),
        }

    # --- History ---

    @retry_on_db_lock()
    def save_snapshot(self, stats: Dict[str, Any]) -> int:
        with contextlib.closing(self._connect()) as conn, conn:
            cursor = conn.execute('''
                INSERT INTO network_stats_history (recorded_at, active_nodes, total_nodes, total_tasks,
                    completed_tasks, failed_tasks, cached_tasks, total_invoices, success_rate, cache_hit_rate)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (self._now(), stats.get('activeNodes', 0), stats.get('totalNodes', 0), stats.get('totalTasks', 0),
                  stats.get('completedTasks', 0), stats.get('failedTasks', 0), stats.get('cachedTasks', 0),
                  stats.get('totalInvoices', 0), stats.get('successRate', 0.0), stats.get('cacheHitRate', 0.0)))
            return cursor.lastrowid

    def get_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent snapshots first."""
        with contextlib.closing(self._connect()) as conn:
            rows = conn.execute('SELECT * FROM network_stats_history ORDER BY recorded_at DESC, id DESC LIMIT ?',
                                (limit,)).fetchall()
            return [dict(row) for row in rows]

    # --- Retention ---

    @retry_on_db_lock()
    def purge(self, history_days: int = DB_HISTORY_RETENTION_DAYS,
              records_days: int = DB_RECORDS_RETENTION_DAYS) -> Dict[str, int]:
        now = self._clock()
        history_cutoff = _iso(now - datetime.timedelta(days=history_days))
        records_cutoff = _iso(now - datetime.timedelta(days=records_days))
        log.info(f"[DB_PRUNER] Starting database pruning. Retention: history={history_days}d, "
                 f"records={records_days}d")

        targets = [
            ('network_stats_history', 'recorded_at', history_cutoff),
            ('aggregated_tasks', 'last_seen_at', records_cutoff),
            ('aggregated_invoices', 'last_seen_at', records_cutoff),
            ('active_nodes', 'last_seen_at', records_cutoff),
        ]
        deleted = {}
        with contextlib.closing(self._connect()) as conn, conn:
            for table, column, cutoff in targets:
                cursor = conn.execute(f"DELETE FROM {table} WHERE {column} < ?", (cutoff,))
                deleted[table] = cursor.rowcount
                if cursor.rowcount:
                    log.info(f"Pruned {cursor.rowcount} old row(s) from {table}.")
        if not any(deleted.values()):
            log.info("No old records found to prune.")
        return deleted
