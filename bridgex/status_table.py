"""
Per-study status table

A one-column table per study whose rows flag that an export date finished
uploading. The table is created on first use.
"""

from bridgex.enhanced_logger import logger
from bridgex.exceptions import BridgeExporterError
from bridgex.export_task import ExportTask
from bridgex.side_index import SYNAPSE_META_TABLES
from bridgex.type_mappings import string_column

COLUMN_NAME_UPLOAD_DATE = 'uploadDate'
STATUS_COLUMNS = [string_column(COLUMN_NAME_UPLOAD_DATE, 10)]


def get_status_table_name(study_id: str) -> str:
    return f"{study_id}-status"


class StatusTableWriter:

    def __init__(self, manager):
        self.manager = manager

    def init_table_and_write_status(self, task: ExportTask, study_id: str):
        """
        Write the task's exporter date to the study's status table, creating the table if needed.

        Raises:
            BridgeExporterError: if the existing table doesn't have exactly the uploadDate column
        """
        table_name = get_status_table_name(study_id)
        side_index = self.manager.get_side_index(task)
        synapse_helper = self.manager.synapse_helper

        table_id = side_index.get_table_id(SYNAPSE_META_TABLES, table_name)
        if table_id is None or not synapse_helper.table_exists(table_id):
            table_id = synapse_helper.create_table_with_columns_and_acls(
                STATUS_COLUMNS,
                self.manager.get_data_access_team_id(study_id),
                self.manager.principal_id,
                self.manager.get_synapse_project_id(study_id, task),
                table_name,
            )
            side_index.put_table_id(SYNAPSE_META_TABLES, 'tableName', table_name, table_id)
            logger.table_created(table_name, table_id, len(STATUS_COLUMNS))

        self._write_status(table_id, task, study_id)

    def _write_status(self, table_id: str, task: ExportTask, study_id: str):
        synapse_helper = self.manager.synapse_helper
        columns = synapse_helper.get_column_models_for_table(table_id)
        if len(columns) != 1:
            raise BridgeExporterError(f"Wrong number of columns in status table for study {study_id}, "
                                      f"expected 1 column, got {len(columns)} columns")

        column = columns[0]
        if column.name != COLUMN_NAME_UPLOAD_DATE:
            raise BridgeExporterError(f"Wrong column in status table for study {study_id}, "
                                      f"expected {COLUMN_NAME_UPLOAD_DATE}, got {column.name}")

        synapse_helper.append_rows_to_table(table_id, [{column.column_id: task.exporter_date_string}])
