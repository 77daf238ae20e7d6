#!/usr/bin/env python3
"""
Export task (one per run), export subtask (one per record and destination) and the export worker
"""

import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Deque, Dict, Optional, Set, Tuple

from bridgex.metrics import Metrics
from bridgex.request import ExporterRequest
from bridgex.schema import SchemaKey
from bridgex.tsv_info import TsvInfo


class MetaTableType(Enum):
    """Tables keyed by study instead of by schema"""
    APP_VERSION = "appVersion"
    DEFAULT = "default"


@dataclass(frozen=True)
class ExportSubtask:
    """One record's unit of work against one target schema"""
    original_record: dict = field(hash=False)
    parent_task: 'ExportTask' = field(hash=False, repr=False)
    record_data: Any = field(hash=False)
    schema_key: SchemaKey

    def __post_init__(self):
        if self.original_record is None:
            raise ValueError("original_record must be specified")
        if self.parent_task is None:
            raise ValueError("parent_task must be specified")
        if self.record_data is None:
            raise ValueError("record_data must be specified")
        if self.schema_key is None:
            raise ValueError("schema_key must be specified")

    @property
    def record_id(self) -> str:
        return self.original_record.get('id')

    @property
    def study_id(self) -> str:
        return self.schema_key.study_id


class ExportTask:
    """
    Job context for one export run.

    Holds the exporter date, metrics, request and temp dir, the per-table TSVs
    and the queue of pending subtask futures.
    """

    def __init__(self, exporter_date: date, metrics: Metrics, request: ExporterRequest, tmp_dir: str):
        self.exporter_date = exporter_date
        self.metrics = metrics
        self.request = request
        self.tmp_dir = tmp_dir
        self.success = False

        self._lock = threading.Lock()
        self._health_data_tsvs: Dict[SchemaKey, TsvInfo] = {}
        self._meta_tsvs: Dict[Tuple[str, MetaTableType], TsvInfo] = {}
        self._study_ids: Set[str] = set()
        self._failed_record_ids: Set[str] = set()
        self._futures: Deque[Tuple[ExportSubtask, Future]] = deque()

    @property
    def exporter_date_string(self) -> str:
        return self.exporter_date.isoformat()

    def get_health_data_tsv(self, schema_key: SchemaKey) -> Optional[TsvInfo]:
        with self._lock:
            return self._health_data_tsvs.get(schema_key)

    def set_health_data_tsv(self, schema_key: SchemaKey, tsv_info: TsvInfo):
        with self._lock:
            self._health_data_tsvs[schema_key] = tsv_info

    def get_meta_tsv(self, study_id: str, table_type: MetaTableType) -> Optional[TsvInfo]:
        with self._lock:
            return self._meta_tsvs.get((study_id, table_type))

    def set_meta_tsv(self, study_id: str, table_type: MetaTableType, tsv_info: TsvInfo):
        with self._lock:
            self._meta_tsvs[(study_id, table_type)] = tsv_info

    def add_study_id(self, study_id: str):
        with self._lock:
            self._study_ids.add(study_id)

    @property
    def study_ids(self) -> Set[str]:
        with self._lock:
            return set(self._study_ids)

    def add_failed_record_id(self, record_id: str):
        """Record that failed before any subtask was queued for it"""
        with self._lock:
            self._failed_record_ids.add(record_id)

    @property
    def failed_record_ids(self) -> Set[str]:
        with self._lock:
            return set(self._failed_record_ids)

    def add_subtask_future(self, subtask: ExportSubtask, future: Future):
        with self._lock:
            self._futures.append((subtask, future))

    def pop_subtask_futures(self):
        """Take every queued (subtask, future) pair in submission order"""
        with self._lock:
            pending = list(self._futures)
            self._futures.clear()
        return pending


class ExportWorker:
    """Runs one handler on one subtask inside the worker pool"""

    def __init__(self, handler, subtask: ExportSubtask):
        self.handler = handler
        self.subtask = subtask

    def run(self):
        self.handler.handle(self.subtask)
