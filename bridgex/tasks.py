#!/usr/bin/env python3
"""
Celery tasks for the Bridge exporter
One task per export request; a Synapse outage sends the request back for a later retry
"""

import threading
import uuid

from bridgex.aws_helpers import DynamoHelper, S3Helper
from bridgex.bridge_client import BridgeClient
from bridgex.celery_config import EXPORT_REQUEST_TASK, ExportRequestPublisher, celery_app
from bridgex.config import config
from bridgex.enhanced_logger import logger
from bridgex.exceptions import RestartExporterError, SynapseUnavailableError
from bridgex.export_helper import ExportHelper
from bridgex.record_processor import RecordProcessor
from bridgex.request import ExporterRequest
from bridgex.schema import SchemaRegistry
from bridgex import side_index
from bridgex.synapse_client import SynapseClient
from bridgex.synapse_helper import SynapseHelper
from bridgex.worker_manager import ExportWorkerManager

RESTART_COUNTDOWN_SECONDS = 15 * 60
MAX_RESTARTS = 24

_processor = None
_processor_lock = threading.Lock()


def build_record_processor(exporter_config=config) -> RecordProcessor:
    """Wire the exporter's collaborators from configuration"""
    s3_helper = S3Helper(region=exporter_config.aws_region)
    dynamo_helper = DynamoHelper(exporter_config.record_table, exporter_config.study_table,
                                 exporter_config.attachment_table, region=exporter_config.aws_region)

    synapse_client = SynapseClient(
        exporter_config.synapse_endpoint,
        exporter_config.synapse_api_key,
        rate_per_second=exporter_config.synapse_rate_per_second,
        column_rate_per_minute=exporter_config.synapse_column_rate_per_minute,
        async_poll_seconds=exporter_config.synapse_async_poll_seconds,
        async_timeout_seconds=exporter_config.synapse_async_timeout_seconds,
    )
    synapse_helper = SynapseHelper(synapse_client, s3_helper, exporter_config.attachment_bucket)
    bridge_client = BridgeClient(exporter_config.bridge_endpoint, exporter_config.bridge_api_token)

    side_index.DB_FILE = exporter_config.side_index_db
    side_index.init_db()

    manager = ExportWorkerManager(
        synapse_helper,
        SchemaRegistry(bridge_client.get_schema),
        dynamo_helper,
        ExportHelper(s3_helper, dynamo_helper, exporter_config.attachment_bucket),
        s3_helper,
        ExportRequestPublisher(celery_app),
        exporter_config=exporter_config,
    )
    return RecordProcessor(manager, dynamo_helper, s3_helper, synapse_helper, exporter_config=exporter_config)


def get_record_processor() -> RecordProcessor:
    global _processor
    with _processor_lock:
        if _processor is None:
            _processor = build_record_processor()
        return _processor


@celery_app.task(bind=True, name=EXPORT_REQUEST_TASK, max_retries=MAX_RESTARTS)
def export_request(self, request_json):
    """
    Run one export request

    Args:
        request_json (str): ExporterRequest as JSON

    Returns:
        dict: Job execution result
    """
    job_id = self.request.id or str(uuid.uuid4())
    request = ExporterRequest.from_json(request_json)
    logger.info(f"Starting export request {request} (Celery task: {job_id})")

    try:
        task = get_record_processor().process_records_for_request(request, job_id=job_id)
    except (RestartExporterError, SynapseUnavailableError) as exc:
        logger.warning(f"Synapse unavailable, retrying request in {RESTART_COUNTDOWN_SECONDS}s: {exc}")
        raise self.retry(exc=exc, countdown=RESTART_COUNTDOWN_SECONDS)
    except Exception as exc:
        logger.error(f"Export request failed: {exc}", exc_info=True)
        raise

    return {
        'job_id': job_id,
        'status': 'completed',
        'exporter_date': task.exporter_date_string,
        'studies': sorted(task.study_ids),
    }
