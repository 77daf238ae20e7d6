#!/usr/bin/env python3
"""
App version meta table: one row per exported record per study, naming the
record's original table, app version and phone.
"""

from typing import Dict, List, Optional

from bridgex.export_handler import EXTERNAL_ID_MAX_LENGTH, SynapseTableExporter
from bridgex.export_task import ExportSubtask, ExportTask, MetaTableType
from bridgex.export_utils import APP_VERSION_MAX_LENGTH, PHONE_INFO_MAX_LENGTH, PhoneAppVersionInfo
from bridgex.side_index import SYNAPSE_META_TABLES
from bridgex.tsv_info import TsvInfo
from bridgex.type_mappings import ColumnModel, string_column

APP_VERSION_COLUMNS = [
    string_column('recordId', 36),
    string_column('healthCode', 36),
    string_column('externalId', EXTERNAL_ID_MAX_LENGTH),
    string_column('uploadDate', 10),
    string_column('originalTable', 128),
    string_column('appVersion', APP_VERSION_MAX_LENGTH),
    string_column('phoneInfo', PHONE_INFO_MAX_LENGTH),
]


class AppVersionExportHandler:
    table_kind = SYNAPSE_META_TABLES
    key_name = 'tableName'

    def __init__(self, manager, study_id: str):
        self.manager = manager
        self.study_id = study_id
        self.exporter = SynapseTableExporter(manager, study_id, self)

    @property
    def key_value(self) -> str:
        return f"{self.study_id}-{MetaTableType.APP_VERSION.value}"

    def column_definitions(self) -> List[ColumnModel]:
        return list(APP_VERSION_COLUMNS)

    def get_tsv(self, task: ExportTask) -> Optional[TsvInfo]:
        return task.get_meta_tsv(self.study_id, MetaTableType.APP_VERSION)

    def set_tsv(self, task: ExportTask, tsv_info: TsvInfo):
        task.set_meta_tsv(self.study_id, MetaTableType.APP_VERSION, tsv_info)

    def row_values(self, subtask: ExportSubtask) -> Dict[str, Optional[str]]:
        app_info = PhoneAppVersionInfo.from_record(subtask.original_record)
        if app_info.app_version and app_info.app_version.strip():
            subtask.parent_task.metrics.add_key_value_pair(f"uniqueAppVersions[{self.study_id}]",
                                                           app_info.app_version)
        return {'originalTable': str(subtask.schema_key)}

    def handle(self, subtask: ExportSubtask):
        self.exporter.write_row(subtask)

    def upload_to_synapse_for_task(self, task: ExportTask):
        self.exporter.upload_to_synapse_for_task(task)
