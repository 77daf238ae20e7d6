#!/usr/bin/env python3
"""
Celery configuration for the Bridge exporter
Export requests are processed one at a time per worker
"""

import os
from celery import Celery

from bridgex.enhanced_logger import logger


class CeleryConfig:
    # Broker settings
    broker_url = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
    result_backend = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

    # Task settings
    task_serializer = 'json'
    accept_content = ['json']
    result_serializer = 'json'
    timezone = os.getenv('EXPORTER_TIME_ZONE', 'America/Los_Angeles')
    enable_utc = True

    # Task routing
    task_routes = {
        'bridgex.tasks.*': {'queue': 'export_requests'},
    }

    # Worker settings
    worker_prefetch_multiplier = 1  # One export request at a time
    task_acks_late = True
    worker_max_tasks_per_child = 10
    worker_max_memory_per_child = 8 * 1024 * 1024  # KB

    # Task result settings
    result_expires = 24 * 3600
    task_ignore_result = False

    # Exports of a full day run for hours
    task_soft_time_limit = 12 * 3600
    task_time_limit = 14 * 3600

    # Monitoring
    worker_send_task_events = True
    task_send_sent_event = True


def create_celery_app(app_name=__name__):
    """Create and configure Celery app"""
    celery = Celery(app_name)
    celery.config_from_object(CeleryConfig)
    return celery


celery_app = create_celery_app('bridgex')


EXPORT_REQUEST_TASK = 'bridgex.tasks.export_request'


class ExportRequestPublisher:
    """Queues export requests, including redrives, for the export_request task"""

    def __init__(self, app=None):
        self.app = app or celery_app

    def send_request(self, request_json: str, countdown: int = 0) -> str:
        result = self.app.send_task(EXPORT_REQUEST_TASK, args=[request_json], countdown=countdown)
        logger.info(f"Queued export request (task id={result.id}, countdown={countdown}s)")
        return result.id
