#!/usr/bin/env python3
"""
Structured logging for the Bridge exporter
Prefixes every message with job, table and memory context
"""

import logging
import os
import time
import threading
import psutil
from typing import Optional
from dataclasses import dataclass
from contextlib import contextmanager


@dataclass
class JobContext:
    """Job-level context for structured logging"""
    job_id: str
    exporter_date: str
    start_time: float
    records_seen: int = 0
    tables_committed: int = 0
    tables_failed: int = 0


@dataclass
class TableContext:
    """Table-level context for structured logging"""
    table_key: str
    start_time: float
    operation: str = "init"


class EnhancedLogger:
    """
    Structured logger with job progress, table context and memory readout
    """

    def __init__(self, name: str = "BRIDGEX", log_file: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self._log_file = log_file or os.getenv('EXPORTER_LOG_FILE', '/tmp/bridgex.log')
        self._setup_logger()

        # Table context is per worker thread; the job context is shared by all workers
        self._local = threading.local()
        self._job_context: Optional[JobContext] = None
        self._lock = threading.Lock()

    def _setup_logger(self):
        """Configure structured logging format"""
        if not self.logger.handlers:
            console_handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '[%(asctime)s] [%(levelname)s] [%(threadName)s] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

            try:
                log_dir = os.path.dirname(self._log_file)
                if log_dir:
                    os.makedirs(log_dir, exist_ok=True)
                file_handler = logging.FileHandler(self._log_file, mode='a')
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)
            except OSError as e:
                # Console logging still works without the file
                console_handler.emit(logging.LogRecord(
                    name=self.logger.name, level=logging.WARNING, pathname='', lineno=0,
                    msg=f"Failed to setup file logging to {self._log_file}: {e}",
                    args=(), exc_info=None
                ))

            self.logger.setLevel(logging.INFO)

    def get_job_context(self) -> Optional[JobContext]:
        with self._lock:
            return self._job_context

    def get_table_context(self) -> Optional[TableContext]:
        return getattr(self._local, 'table_context', None)

    @contextmanager
    def table_context(self, table_key: str, operation: str = "init"):
        """Attach a table key to every message logged by this thread inside the block"""
        previous = self.get_table_context()
        self._local.table_context = TableContext(table_key=table_key, start_time=time.time(),
                                                 operation=operation)
        try:
            yield self._local.table_context
        finally:
            self._local.table_context = previous

    def _format_duration(self, seconds: float) -> str:
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            return f"{seconds/60:.1f}m"
        else:
            return f"{seconds/3600:.1f}h"

    def _get_memory_usage(self) -> str:
        try:
            process = psutil.Process()
            memory_mb = process.memory_info().rss / 1024 / 1024
            return f"{memory_mb:.1f}MB"
        except psutil.Error:
            return "Unknown"

    def _build_context_prefix(self) -> str:
        """Build context prefix for log messages"""
        parts = []

        job_ctx = self.get_job_context()
        if job_ctx:
            parts.append(f"JOB:{job_ctx.job_id}")
            parts.append(f"DATE:{job_ctx.exporter_date}")

        table_ctx = self.get_table_context()
        if table_ctx:
            parts.append(f"TABLE:{table_ctx.table_key}")
            parts.append(f"OP:{table_ctx.operation}")

        parts.append(f"MEM:{self._get_memory_usage()}")

        return "[" + "] [".join(parts) + "]"

    def info(self, message: str, **kwargs):
        self.logger.info(f"{self._build_context_prefix()} {message}", **kwargs)

    def warning(self, message: str, **kwargs):
        self.logger.warning(f"{self._build_context_prefix()} {message}", **kwargs)

    def error(self, message: str, **kwargs):
        self.logger.error(f"{self._build_context_prefix()} {message}", **kwargs)

    def debug(self, message: str, **kwargs):
        self.logger.debug(f"{self._build_context_prefix()} {message}", **kwargs)

    # Job-level logging methods
    def job_started(self, job_id: str, exporter_date: str, request_summary: str = ""):
        """Log job start and make its context visible to every worker thread"""
        with self._lock:
            self._job_context = JobContext(job_id=job_id, exporter_date=exporter_date,
                                           start_time=time.time())
        self.info(f"Started export job {request_summary}".rstrip())

    def job_progress(self, records_seen: int):
        """Log record loop progress"""
        job_ctx = self.get_job_context()
        if job_ctx:
            job_ctx.records_seen = records_seen
            elapsed = time.time() - job_ctx.start_time
            self.info(f"Num records so far: {records_seen} in {self._format_duration(elapsed)}")
        else:
            self.info(f"Num records so far: {records_seen}")

    def job_completed(self):
        """Log job completion and clear the job context"""
        job_ctx = self.get_job_context()
        if job_ctx:
            duration = time.time() - job_ctx.start_time
            self.info(f"Finished processing request in {self._format_duration(duration)} - "
                      f"{job_ctx.records_seen} records, {job_ctx.tables_committed} tables committed, "
                      f"{job_ctx.tables_failed} tables failed")
        with self._lock:
            self._job_context = None

    def job_failed(self, error: str):
        """Log job failure and clear the job context"""
        job_ctx = self.get_job_context()
        duration = f" after {self._format_duration(time.time() - job_ctx.start_time)}" if job_ctx else ""
        self.error(f"Error processing request{duration}: {error}")
        with self._lock:
            self._job_context = None

    # Table-level logging methods
    def table_created(self, table_key: str, table_id: str, num_columns: int):
        self.info(f"Created table {table_id} for {table_key} with {num_columns} columns")

    def table_migrated(self, table_id: str, added: list, kept: list):
        self.info(f"Updating table {table_id}: adding columns {added}, keeping {len(kept)} columns")

    def table_committed(self, table_key: str, table_id: str, line_count: int, duration: float):
        with self._lock:
            if self._job_context:
                self._job_context.tables_committed += 1
        self.info(f"Uploaded {line_count} rows for {table_key} to table {table_id} "
                  f"in {self._format_duration(duration)}")

    def table_failed(self, table_key: str, error: str):
        with self._lock:
            if self._job_context:
                self._job_context.tables_failed += 1
        self.error(f"Error uploading table {table_key}: {error}")

    def log_system_stats(self):
        """Log current system resource usage"""
        try:
            memory = psutil.virtual_memory()
            disk_usage = psutil.disk_usage(os.getenv('EXPORTER_TMP_DIR', '/tmp'))
            self.info(f"System stats - CPU:{psutil.cpu_percent(interval=None):.1f}% "
                      f"MEM:{memory.percent:.1f}% "
                      f"MEM-FREE:{memory.available / 1024 ** 3:.1f}GB "
                      f"DISK-FREE:{disk_usage.free / 1024 ** 3:.1f}GB")
        except (psutil.Error, OSError) as e:
            self.debug(f"Could not collect system stats: {e}")


# Global logger instance
logger = EnhancedLogger("BRIDGEX")
