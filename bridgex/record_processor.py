#!/usr/bin/env python3
"""
Record processing loop for one export request

Checks Synapse is writable, picks the record id source for the request, filters
each record, hands the survivors to the worker manager and finishes with end of
stream. Metrics are published whether or not the run succeeds.
"""

import shutil
import tempfile
import time
import uuid
from datetime import date, datetime, time as dt_time, timedelta, timezone
from itertools import chain
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

import httpx

from bridgex.config import config
from bridgex.enhanced_logger import logger
from bridgex.exceptions import ServiceError, SynapseUnavailableError, TsvError
from bridgex.export_task import ExportTask
from bridgex.export_utils import get_schema_key_for_record
from bridgex.metrics import Metrics
from bridgex.request import ExporterRequest, SharingScope


class RecordFilterHelper:
    """Decides which records a request excludes. Every filter runs so every filter's metrics are counted."""

    def __init__(self, dynamo_helper):
        self.dynamo_helper = dynamo_helper
        self._study_infos = {}

    def should_exclude_record(self, metrics: Metrics, request: ExporterRequest, record: dict) -> bool:
        """
        Args:
            metrics: task metrics, counts accepted/excluded records per filter
            request: export request carrying the filters
            record: source record

        Returns:
            bool: True if any filter excludes the record

        Raises:
            ValueError: if the record has no study id
        """
        study_id = record.get('studyId')
        if not study_id or not str(study_id).strip():
            raise ValueError("record has no study ID")

        exclude_by_scope = self._should_exclude_by_sharing_scope(metrics, request, record)

        exclude_by_study = False
        if request.study_whitelist is not None:
            exclude_by_study = self._should_exclude_by_whitelist(metrics, request.study_whitelist, study_id)

        exclude_by_table = False
        if request.table_whitelist is not None:
            exclude_by_table = self._should_exclude_by_whitelist(metrics, request.table_whitelist,
                                                                 get_schema_key_for_record(record))

        exclude_by_study_config = self._should_exclude_by_study_config(metrics, request.study_whitelist, study_id)

        return exclude_by_scope or exclude_by_study or exclude_by_table or exclude_by_study_config

    @staticmethod
    def _should_exclude_by_sharing_scope(metrics: Metrics, request: ExporterRequest, record: dict) -> bool:
        scope_name = record.get('userSharingScope')
        sharing_scope = SharingScope.NO_SHARING
        if scope_name and str(scope_name).strip():
            try:
                sharing_scope = SharingScope(scope_name)
            except ValueError:
                logger.error(f"Could not parse sharing scope {scope_name}")

        if request.sharing_mode.should_exclude_scope(sharing_scope):
            metrics.increment_counter(f"excluded[{sharing_scope.name}]")
            return True
        metrics.increment_counter(f"accepted[{sharing_scope.name}]")
        return False

    @staticmethod
    def _should_exclude_by_whitelist(metrics: Metrics, whitelist, value) -> bool:
        if value in whitelist:
            metrics.increment_counter(f"accepted[{value}]")
            return False
        metrics.increment_counter(f"excluded[{value}]")
        return True

    def _get_study_info(self, study_id: str):
        if study_id not in self._study_infos:
            self._study_infos[study_id] = self.dynamo_helper.get_study_info(study_id)
        return self._study_infos[study_id]

    def _should_exclude_by_study_config(self, metrics: Metrics, study_whitelist, study_id: str) -> bool:
        study_info = self._get_study_info(study_id)
        if study_info is None:
            metrics.increment_counter(f"unconfigured[{study_id}]")
            return True

        if study_info.disable_export:
            metrics.increment_counter(f"disabled-export study[{study_id}]")
            return True

        if not study_info.uses_custom_export_schedule:
            metrics.increment_counter(f"configured[{study_id}]")
            return False

        # Custom schedule studies only export in jobs that name them
        if study_whitelist is not None and study_id in study_whitelist:
            metrics.increment_counter(f"custom-export-accepted[{study_id}]")
            return False
        metrics.increment_counter(f"custom-export-excluded[{study_id}]")
        return True

    def clear(self):
        self._study_infos.clear()


def _epoch_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class RecordIdSource:
    """Record ids for a request: an override file, per-study index queries, or the upload date index"""

    def __init__(self, dynamo_helper, s3_helper, override_bucket: str, time_zone: str):
        self.dynamo_helper = dynamo_helper
        self.s3_helper = s3_helper
        self.override_bucket = override_bucket
        self.time_zone = ZoneInfo(time_zone)

    def get_record_ids(self, request: ExporterRequest) -> Iterable[str]:
        if request.record_id_s3_override and request.record_id_s3_override.strip():
            return self.s3_helper.read_lines(self.override_bucket, request.record_id_s3_override)
        if request.study_whitelist is not None:
            return self._record_ids_for_studies(request)
        return self.dynamo_helper.query_record_ids_by_upload_date(request.export_date.isoformat())

    def _record_ids_for_studies(self, request: ExporterRequest) -> Iterable[str]:
        if request.export_date is not None:
            start = datetime.combine(request.export_date, dt_time.min, tzinfo=self.time_zone)
            end = datetime.combine(request.export_date + timedelta(days=1), dt_time.min, tzinfo=self.time_zone)
        else:
            start = request.start_date_time
            end = request.end_date_time

        # Index range queries are inclusive on both ends; the end is exclusive here
        start_millis = _epoch_millis(start)
        end_millis = _epoch_millis(end) - 1

        return chain.from_iterable(
            self.dynamo_helper.query_record_ids_for_study(study_id, start_millis, end_millis)
            for study_id in sorted(request.study_whitelist))


class RecordProcessor:

    def __init__(self, worker_manager, dynamo_helper, s3_helper, synapse_helper, exporter_config=config):
        self.worker_manager = worker_manager
        self.dynamo_helper = dynamo_helper
        self.synapse_helper = synapse_helper
        self.filter_helper = RecordFilterHelper(dynamo_helper)
        self.record_id_source = RecordIdSource(dynamo_helper, s3_helper, exporter_config.record_id_override_bucket,
                                               exporter_config.time_zone)
        self.time_zone = ZoneInfo(exporter_config.time_zone)
        self.tmp_dir = exporter_config.tmp_dir
        self.progress_report_period = exporter_config.progress_report_period or 250
        self.delay_seconds = exporter_config.record_loop_delay_ms / 1000.0

    def _check_synapse_writable(self):
        try:
            writable = self.synapse_helper.is_synapse_writable()
        except (ServiceError, httpx.HTTPError) as e:
            raise SynapseUnavailableError(f"Error calling Synapse: {e}") from e
        if not writable:
            raise SynapseUnavailableError("Synapse not in writable state")

    def _exporter_date(self) -> date:
        return datetime.now(self.time_zone).date()

    def process_records_for_request(self, request: ExporterRequest, job_id: Optional[str] = None) -> ExportTask:
        """
        Export every record the request selects.

        Raises:
            SynapseUnavailableError: if Synapse isn't writable; nothing is processed
            RestartExporterError: if Synapse went down during the run
        """
        logger.info(f"Received request {request}")
        self._check_synapse_writable()

        metrics = Metrics()
        task_dir = tempfile.mkdtemp(prefix="bridgex-", dir=self.tmp_dir)
        task = ExportTask(exporter_date=self._exporter_date(), metrics=metrics, request=request, tmp_dir=task_dir)
        logger.job_started(job_id or str(uuid.uuid4()), task.exporter_date_string, str(request))

        try:
            for record_id in self.record_id_source.get_record_ids(request):
                num_total = metrics.increment_counter("numTotal")
                if num_total % self.progress_report_period == 0:
                    logger.job_progress(num_total)
                    logger.log_system_stats()

                if self.delay_seconds > 0:
                    time.sleep(self.delay_seconds)

                self._process_record(task, record_id)

            self.worker_manager.end_of_stream(task)
            task.success = True
        finally:
            if task.success:
                logger.job_completed()
            else:
                logger.job_failed(f"request {request}")
            metrics.publish()
            self.filter_helper.clear()
            shutil.rmtree(task_dir, ignore_errors=True)

        return task

    def _process_record(self, task: ExportTask, record_id: str):
        metrics = task.metrics
        try:
            record = self.dynamo_helper.get_record(record_id)
            if record is None:
                logger.error(f"Missing health data record for ID {record_id}")
                return

            if self.filter_helper.should_exclude_record(metrics, task.request, record):
                return

            metrics.increment_set_counter(f"uniqueHealthCodes[{record.get('studyId')}]", record.get('healthCode'))
            self.worker_manager.add_subtask_for_record(task, record)
        except Exception as e:
            logger.error(f"Exception processing record {record_id}: {e}", exc_info=True)
            if not isinstance(e, TsvError):
                task.add_failed_record_id(record_id)
