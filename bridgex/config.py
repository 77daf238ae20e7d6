#!/usr/bin/env python3
"""
Exporter configuration
All settings come from environment variables with development defaults
"""

import os
import tempfile


class ExporterConfig:
    # Worker pool
    worker_pool_size = int(os.getenv('EXPORTER_WORKER_POOL_SIZE', '8'))
    progress_report_period = int(os.getenv('EXPORTER_PROGRESS_REPORT_PERIOD', '250'))
    record_loop_delay_ms = int(os.getenv('EXPORTER_RECORD_LOOP_DELAY_MS', '0'))

    # Redrive
    redrive_max_count = int(os.getenv('EXPORTER_REDRIVE_MAX_COUNT', '3'))
    redrive_delay_seconds = int(os.getenv('EXPORTER_REDRIVE_DELAY_SECONDS', '900'))

    # Dates and scratch space
    time_zone = os.getenv('EXPORTER_TIME_ZONE', 'America/Los_Angeles')
    tmp_dir = os.getenv('EXPORTER_TMP_DIR', tempfile.gettempdir())

    # Side index (destination table ids)
    side_index_db = os.getenv('EXPORTER_SIDE_INDEX_DB', '/tmp/bridgex.db')
    ddb_prefix = os.getenv('EXPORTER_DDB_PREFIX', 'prod-exporter-')

    # Source record store
    record_table = os.getenv('EXPORTER_RECORD_TABLE', 'prod-heroku-HealthDataRecord3')
    study_table = os.getenv('EXPORTER_STUDY_TABLE', 'prod-heroku-Study')
    attachment_table = os.getenv('EXPORTER_ATTACHMENT_TABLE', 'prod-heroku-HealthDataAttachment')
    aws_region = os.getenv('AWS_REGION', 'us-east-1')

    # Blob store and queue
    attachment_bucket = os.getenv('EXPORTER_ATTACHMENT_BUCKET', 'org-sagebridge-attachment-prod')
    record_id_override_bucket = os.getenv('EXPORTER_RECORD_ID_OVERRIDE_BUCKET',
                                          'org-sagebridge-exporter-record-id-override')

    # Synapse
    synapse_endpoint = os.getenv('SYNAPSE_ENDPOINT', 'https://repo-prod.prod.sagebase.org')
    synapse_api_key = os.getenv('SYNAPSE_API_KEY', '')
    synapse_principal_id = int(os.getenv('SYNAPSE_PRINCIPAL_ID', '0'))
    synapse_rate_per_second = float(os.getenv('SYNAPSE_RATE_PER_SECOND', '10'))
    synapse_column_rate_per_minute = float(os.getenv('SYNAPSE_COLUMN_RATE_PER_MINUTE', '24'))
    synapse_async_poll_seconds = float(os.getenv('SYNAPSE_ASYNC_POLL_SECONDS', '1'))
    synapse_async_timeout_seconds = float(os.getenv('SYNAPSE_ASYNC_TIMEOUT_SECONDS', '300'))

    # Bridge server (schemas)
    bridge_endpoint = os.getenv('BRIDGE_ENDPOINT', 'https://webservices.sagebridge.org')
    bridge_api_token = os.getenv('BRIDGE_API_TOKEN', '')

    # Logging
    log_file = os.getenv('EXPORTER_LOG_FILE', '/tmp/bridgex.log')


config = ExporterConfig()
