#!/usr/bin/env python3
"""
Export worker manager

Routes each record to its handlers, runs them on a bounded worker pool, and at
end of stream drains the pool, commits every table, writes status rows and
publishes redrive requests for whatever failed.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from botocore.exceptions import BotoCoreError, ClientError
from kombu.exceptions import OperationalError

from bridgex.app_version_handler import AppVersionExportHandler
from bridgex.config import config
from bridgex.enhanced_logger import logger
from bridgex.exceptions import (
    BridgeExporterError,
    RestartExporterError,
    SchemaNotFoundError,
    TsvError,
    is_retryable,
    is_synapse_down,
)
from bridgex.export_task import ExportSubtask, ExportTask, ExportWorker
from bridgex.export_utils import get_schema_key_for_record, parse_json_field
from bridgex.health_data_handler import HealthDataExportHandler, SchemalessExportHandler
from bridgex.schema import SchemaKey
from bridgex.side_index import SideIndex
from bridgex.status_table import StatusTableWriter
from bridgex.survey_handler import SURVEY_SCHEMA_ID, IosSurveyExportHandler

REDRIVE_RECORDS_TAG_PREFIX = "redrive records; original: "
REDRIVE_TABLES_TAG_PREFIX = "redrive tables; original: "
REDRIVE_RECORD_IDS_PREFIX = "redrive-record-ids."


def redrive_tag(prefix: str, tag: Optional[str]) -> str:
    """Tag for a redrive request. Redrives of redrives keep pointing at the first request's tag."""
    original = tag or ''
    for one_prefix in (REDRIVE_RECORDS_TAG_PREFIX, REDRIVE_TABLES_TAG_PREFIX):
        if original.startswith(one_prefix):
            original = original[len(one_prefix):]
            break
    return prefix + original


def _classify(error: BaseException) -> str:
    return "retryable" if is_retryable(error) else "non-retryable"


class ExportWorkerManager:
    """
    Owns the worker pool and the handlers touched by the current run.

    Handlers are created once per key per run: health data handlers per
    schema key, app version, default and survey handlers per study. The caches
    are cleared at end of stream.
    """

    def __init__(self, synapse_helper, schema_registry, dynamo_helper, export_helper, s3_helper, request_publisher,
                 exporter_config=config, executor: Optional[ThreadPoolExecutor] = None):
        self.synapse_helper = synapse_helper
        self.schema_registry = schema_registry
        self.dynamo_helper = dynamo_helper
        self.export_helper = export_helper
        self.s3_helper = s3_helper
        self.request_publisher = request_publisher

        self.ddb_prefix = exporter_config.ddb_prefix
        self.principal_id = exporter_config.synapse_principal_id
        self.record_id_override_bucket = exporter_config.record_id_override_bucket
        self.redrive_max_count = exporter_config.redrive_max_count
        self.redrive_delay_seconds = exporter_config.redrive_delay_seconds
        self.progress_report_period = exporter_config.progress_report_period or 250

        self.executor = executor or ThreadPoolExecutor(max_workers=exporter_config.worker_pool_size,
                                                       thread_name_prefix="export-worker")
        self.status_table_writer = StatusTableWriter(self)

        self._lock = threading.Lock()
        self._health_data_handlers: Dict[SchemaKey, HealthDataExportHandler] = {}
        self._schemaless_handlers: Dict[str, SchemalessExportHandler] = {}
        self._app_version_handlers: Dict[str, AppVersionExportHandler] = {}
        self._survey_handlers: Dict[str, IosSurveyExportHandler] = {}
        self._study_infos = {}

    # Study config and overrides

    def get_side_index(self, task: ExportTask) -> SideIndex:
        override = task.request.exporter_ddb_prefix_override
        if override and override.strip():
            return SideIndex(override)
        return SideIndex(self.ddb_prefix)

    def _get_study_info(self, study_id: str):
        with self._lock:
            if study_id in self._study_infos:
                return self._study_infos[study_id]
        study_info = self.dynamo_helper.get_study_info(study_id)
        with self._lock:
            self._study_infos[study_id] = study_info
        return study_info

    def get_data_access_team_id(self, study_id: str) -> int:
        study_info = self._get_study_info(study_id)
        if study_info is None:
            raise BridgeExporterError(f"Study {study_id} is not configured for export")
        return study_info.data_access_team_id

    def get_synapse_project_id(self, study_id: str, task: ExportTask) -> str:
        """Project for a study's tables: the request's override map first, then study config"""
        override_map = task.request.synapse_project_override_map
        if override_map and study_id in override_map:
            return override_map[study_id]

        study_info = self._get_study_info(study_id)
        if study_info is None:
            raise BridgeExporterError(f"Study {study_id} is not configured for export")
        return study_info.synapse_project_id

    # Routing

    def add_subtask_for_record(self, task: ExportTask, record: dict):
        """
        Queue the subtasks for one record and return immediately.

        Legacy survey records go to the survey handler only. Everything else
        goes to the study's app version table and the schema's table.

        Raises:
            json.JSONDecodeError: if the record data isn't JSON
            BridgeExporterError: if the record has no data
        """
        schema_key = get_schema_key_for_record(record)
        study_id = schema_key.study_id
        task.add_study_id(study_id)

        record_data = parse_json_field(record, 'data')
        if record_data is None:
            raise BridgeExporterError(f"Record {record.get('id')} has no data")
        subtask = ExportSubtask(original_record=record, parent_task=task, record_data=record_data,
                                schema_key=schema_key)

        if schema_key.schema_id == SURVEY_SCHEMA_ID:
            self._queue_worker(self._get_survey_handler(study_id), task, subtask)
        else:
            self.add_health_data_subtask(task, study_id, schema_key, subtask)

    def add_health_data_subtask(self, task: ExportTask, study_id: str, schema_key: SchemaKey,
                                subtask: ExportSubtask):
        """Queue one health data subtask on its app version table and its schema's table"""
        self._queue_worker(self._get_app_version_handler(study_id), task, subtask)
        self._queue_worker(self._get_health_data_handler(task, schema_key), task, subtask)

    def _queue_worker(self, handler, task: ExportTask, subtask: ExportSubtask):
        worker = ExportWorker(handler, subtask)
        future = self.executor.submit(worker.run)
        task.add_subtask_future(subtask, future)

    def _get_app_version_handler(self, study_id: str) -> AppVersionExportHandler:
        with self._lock:
            handler = self._app_version_handlers.get(study_id)
            if handler is None:
                handler = AppVersionExportHandler(self, study_id)
                self._app_version_handlers[study_id] = handler
            return handler

    def _get_survey_handler(self, study_id: str) -> IosSurveyExportHandler:
        with self._lock:
            handler = self._survey_handlers.get(study_id)
            if handler is None:
                handler = IosSurveyExportHandler(self, study_id)
                self._survey_handlers[study_id] = handler
            return handler

    def _get_health_data_handler(self, task: ExportTask, schema_key: SchemaKey):
        """Handler for a schema's table, or the study's default table when the schema doesn't exist"""
        with self._lock:
            handler = self._health_data_handlers.get(schema_key)
        if handler is not None:
            return handler

        try:
            schema = self.schema_registry.get_schema(schema_key)
        except SchemaNotFoundError:
            task.metrics.add_key_value_pair("schemasNotFound", str(schema_key))
            logger.warning(f"Schema {schema_key} not found, exporting to the default table")
            return self._get_schemaless_handler(schema_key.study_id)

        with self._lock:
            handler = self._health_data_handlers.get(schema_key)
            if handler is None:
                handler = HealthDataExportHandler(self, schema_key.study_id, schema)
                self._health_data_handlers[schema_key] = handler
            return handler

    def _get_schemaless_handler(self, study_id: str) -> SchemalessExportHandler:
        with self._lock:
            handler = self._schemaless_handlers.get(study_id)
            if handler is None:
                handler = SchemalessExportHandler(self, study_id)
                self._schemaless_handlers[study_id] = handler
            return handler

    # End of stream

    def end_of_stream(self, task: ExportTask):
        """
        Finish a run: wait for every subtask, commit every table, write status rows, then redrive failures.

        Raises:
            RestartExporterError: if Synapse is down; nothing after the failing step runs
        """
        request = task.request
        logger.info(f"End of stream signaled for request {request}")
        try:
            redrive_record_ids = self._drain_subtasks(task)
            logger.info(f"All subtasks done for request {request}")

            redrive_tables = self._commit_health_data_tables(task)
            redrive_record_ids |= self._commit_meta_tables(task)
            self._write_status_rows(task)

            if request.redrive_count < self.redrive_max_count:
                if redrive_record_ids:
                    self.redrive_records(task, redrive_record_ids)
                if redrive_tables:
                    self.redrive_tables(task, redrive_tables)
            elif redrive_record_ids or redrive_tables:
                logger.warning(f"Redrive count {request.redrive_count} reached max {self.redrive_max_count}, "
                               f"not redriving {len(redrive_record_ids)} records and {len(redrive_tables)} tables")

            logger.info(f"Done uploading to Synapse for request {request}")
        finally:
            self._reset_handlers()

    def _drain_subtasks(self, task: ExportTask) -> Set[str]:
        """Wait on every queued subtask, including ones queued by running subtasks. Returns record ids to redrive."""
        redrive_record_ids = task.failed_record_ids
        start = time.time()

        pending = task.pop_subtask_futures()
        while pending:
            for i, (subtask, future) in enumerate(pending):
                num_outstanding = len(pending) - i
                if num_outstanding % self.progress_report_period == 0:
                    logger.info(f"Num outstanding tasks: {num_outstanding} after {time.time() - start:.0f} seconds")

                try:
                    future.result()
                except Exception as e:
                    record_id = subtask.record_id
                    if is_synapse_down(e):
                        raise RestartExporterError(f"Restarting Bridge Exporter; last recordId={record_id}: {e}") from e

                    logger.error(f"Error completing subtask for recordId={record_id} ({_classify(e)}): {e}")
                    # TSV failures fail the whole table, which is redriven instead
                    if not isinstance(e, TsvError):
                        redrive_record_ids.add(record_id)

            pending = task.pop_subtask_futures()

        return redrive_record_ids

    def _commit_health_data_tables(self, task: ExportTask) -> Set[SchemaKey]:
        with self._lock:
            handlers = sorted(self._health_data_handlers.items())

        redrive_tables = set()
        for schema_key, handler in handlers:
            try:
                handler.upload_to_synapse_for_task(task)
            except Exception as e:
                original = e
                if isinstance(e, TsvError) and e.__cause__ is not None:
                    original = e.__cause__

                if is_synapse_down(original):
                    raise RestartExporterError(f"Restarting Bridge Exporter; last schema={schema_key}: "
                                               f"{original}") from original

                logger.table_failed(str(schema_key), f"{original} ({_classify(original)})")
                redrive_tables.add(schema_key)
        return redrive_tables

    def _commit_meta_tables(self, task: ExportTask) -> Set[str]:
        """
        Commit app version and default tables. Returns the record ids of failed tables.

        Meta tables can't be named in a table whitelist, so a failed one is redriven
        record by record from its TSV bookkeeping.
        """
        with self._lock:
            handlers = ([handler for _, handler in sorted(self._app_version_handlers.items())] +
                        [handler for _, handler in sorted(self._schemaless_handlers.items())])

        redrive_record_ids = set()
        for handler in handlers:
            table_name = handler.key_value
            try:
                handler.upload_to_synapse_for_task(task)
            except Exception as e:
                if is_synapse_down(e):
                    raise RestartExporterError(f"Restarting Bridge Exporter; last table={table_name}: {e}") from e
                logger.table_failed(table_name, str(e))
                tsv_info = handler.get_tsv(task)
                if tsv_info is not None:
                    redrive_record_ids.update(tsv_info.record_ids)
        return redrive_record_ids

    def _write_status_rows(self, task: ExportTask):
        for study_id in sorted(task.study_ids):
            try:
                self.status_table_writer.init_table_and_write_status(task, study_id)
            except Exception as e:
                if is_synapse_down(e):
                    raise RestartExporterError(f"Restarting Bridge Exporter; last status study={study_id}: "
                                               f"{e}") from e
                logger.error(f"Error writing to status table for study={study_id}: {e}")

    # Redrive

    def redrive_records(self, task: ExportTask, record_ids: Set[str]):
        """Write the record ids to S3 and queue a request for exactly those records"""
        request = task.request
        filename = REDRIVE_RECORD_IDS_PREFIX + datetime.now(timezone.utc).isoformat()
        redrive_request = request.copy(
            export_date=None,
            start_date_time=None,
            end_date_time=None,
            record_id_s3_override=filename,
            tag=redrive_tag(REDRIVE_RECORDS_TAG_PREFIX, request.tag),
            redrive_count=request.redrive_count + 1,
        )
        logger.info(f"Redriving {len(record_ids)} records using S3 file {filename}")

        try:
            self.s3_helper.write_lines(self.record_id_override_bucket, filename, sorted(record_ids))
            self.request_publisher.send_request(redrive_request.to_json(), countdown=self.redrive_delay_seconds)
        except (BotoCoreError, ClientError, OperationalError) as e:
            logger.error(f"Error redriving records: {e}")

    def redrive_tables(self, task: ExportTask, schema_keys: Set[SchemaKey]):
        """Queue the original request again, restricted to the failed tables"""
        request = task.request
        redrive_request = request.copy(
            table_whitelist=frozenset(schema_keys),
            tag=redrive_tag(REDRIVE_TABLES_TAG_PREFIX, request.tag),
            redrive_count=request.redrive_count + 1,
        )
        logger.info(f"Redriving tables: {', '.join(str(key) for key in sorted(schema_keys))}")

        try:
            self.request_publisher.send_request(redrive_request.to_json(), countdown=self.redrive_delay_seconds)
        except (BotoCoreError, ClientError, OperationalError) as e:
            logger.error(f"Error redriving tables: {e}")

    def _reset_handlers(self):
        with self._lock:
            self._health_data_handlers.clear()
            self._schemaless_handlers.clear()
            self._app_version_handlers.clear()
            self._survey_handlers.clear()
            self._study_infos.clear()
        self.schema_registry.clear()

    def shutdown(self):
        self.executor.shutdown(wait=True)
