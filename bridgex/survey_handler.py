#!/usr/bin/env python3
"""
Legacy iOS survey handler

Doesn't own a table. Each survey record is converted into health data for the
schema named by its "item" field (revision 1) and handed to the manager as a
health data subtask. Converted subtasks never come back here.
"""

from bridgex.enhanced_logger import logger
from bridgex.exceptions import BridgeExporterError
from bridgex.export_task import ExportSubtask, ExportTask
from bridgex.schema import SchemaKey

SURVEY_SCHEMA_ID = 'ios-survey'
SURVEY_TARGET_REVISION = 1


class IosSurveyExportHandler:

    def __init__(self, manager, study_id: str):
        self.manager = manager
        self.study_id = study_id

    def handle(self, subtask: ExportSubtask):
        metrics = subtask.parent_task.metrics
        try:
            self._process_record_as_survey(subtask)
            metrics.increment_counter(f"surveyWorker[{self.study_id}].surveyCount")
        except Exception as e:
            metrics.increment_counter(f"surveyWorker[{self.study_id}].errorCount")
            logger.error(f"Error processing survey record {subtask.record_id} for study {self.study_id}: {e}")
            raise

    def _process_record_as_survey(self, subtask: ExportSubtask):
        task = subtask.parent_task
        old_data = subtask.record_data if isinstance(subtask.record_data, dict) else {}

        item = old_data.get('item')
        if item is None:
            raise BridgeExporterError("No item field in survey data")
        if not isinstance(item, str) or not item.strip():
            raise BridgeExporterError("Null or empty item field in survey data")

        schema_key = SchemaKey(study_id=self.study_id, schema_id=item, revision=SURVEY_TARGET_REVISION)
        survey_schema = self.manager.schema_registry.get_schema(schema_key)

        converted = self.manager.export_helper.convert_survey_record_to_health_data(
            subtask.record_id, old_data, survey_schema)
        converted_subtask = ExportSubtask(original_record=subtask.original_record, parent_task=task,
                                          record_data=converted, schema_key=schema_key)
        self.manager.add_health_data_subtask(task, self.study_id, schema_key, converted_subtask)

    def upload_to_synapse_for_task(self, task: ExportTask):
        """Nothing to commit"""
