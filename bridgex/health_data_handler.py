#!/usr/bin/env python3
"""
Health data table handler (one table per schema) and the schemaless default table handler
"""

from dataclasses import replace
from typing import Dict, List, Optional

from bridgex.enhanced_logger import logger
from bridgex.export_handler import COMMON_COLUMNS, SynapseTableExporter
from bridgex.export_task import ExportSubtask, ExportTask, MetaTableType
from bridgex.export_utils import parse_timestamp, should_convert_freeform_text_to_attachment
from bridgex.schema import FieldDefinition, FieldType, SchemaKey, UploadSchema
from bridgex.side_index import SYNAPSE_META_TABLES, SYNAPSE_TABLES
from bridgex.tsv_info import TsvInfo
from bridgex.type_mappings import (
    BRIDGE_TYPE_TO_SYNAPSE_TYPE,
    DEFAULT_MAX_LENGTH,
    TIMEZONE_MAX_LENGTH,
    ColumnModel,
    ColumnType,
    get_max_length_for_field,
    string_column,
)

TIMEZONE_SUFFIX = '.timezone'
OTHER_CHOICE_SUFFIX = '.other'


def multi_choice_column_name(field_name: str, choice: str) -> str:
    return f"{field_name}.{choice}"


class HealthDataExportHandler:
    """
    Exports records for one schema into its own table.

    Columns are the common columns followed by the schema's fields in schema
    order. Timestamps take two columns (epoch millis plus offset) and multiple
    choice fields take one boolean column per answer.
    """

    table_kind = SYNAPSE_TABLES
    key_name = 'schemaKey'

    def __init__(self, manager, study_id: str, schema: Optional[UploadSchema]):
        self.manager = manager
        self.study_id = study_id
        self.schema = schema
        self.exporter = SynapseTableExporter(manager, study_id, self)

    @property
    def schema_key(self) -> SchemaKey:
        return self.schema.key

    @property
    def key_value(self) -> str:
        return str(self.schema_key)

    @property
    def field_definitions(self) -> List[FieldDefinition]:
        return list(self.schema.field_definitions) if self.schema is not None else []

    def get_tsv(self, task: ExportTask) -> Optional[TsvInfo]:
        return task.get_health_data_tsv(self.schema_key)

    def set_tsv(self, task: ExportTask, tsv_info: TsvInfo):
        task.set_health_data_tsv(self.schema_key, tsv_info)

    def _converts_to_attachment(self, field_name: str) -> bool:
        return self.schema is not None and should_convert_freeform_text_to_attachment(self.schema_key, field_name)

    def column_definitions(self) -> List[ColumnModel]:
        columns = list(COMMON_COLUMNS)
        for field_def in self.field_definitions:
            columns.extend(self._columns_for_field(field_def))
        return columns

    def _columns_for_field(self, field_def: FieldDefinition) -> List[ColumnModel]:
        name = field_def.name

        if self._converts_to_attachment(name):
            return [ColumnModel(name=name, column_type=ColumnType.FILEHANDLEID)]

        if field_def.type == FieldType.TIMESTAMP:
            return [ColumnModel(name=name, column_type=ColumnType.DATE),
                    string_column(name + TIMEZONE_SUFFIX, TIMEZONE_MAX_LENGTH)]

        if field_def.type == FieldType.MULTI_CHOICE:
            columns = [ColumnModel(name=multi_choice_column_name(name, choice), column_type=ColumnType.BOOLEAN)
                       for choice in field_def.multi_choice_answers]
            if field_def.allow_other_choices:
                columns.append(string_column(name + OTHER_CHOICE_SUFFIX, DEFAULT_MAX_LENGTH))
            return columns

        synapse_type = BRIDGE_TYPE_TO_SYNAPSE_TYPE.get(field_def.type)
        if synapse_type is None:
            logger.warning(f"No Synapse type found for Bridge type {field_def.type.name}, using STRING")
            synapse_type = ColumnType.STRING

        if synapse_type == ColumnType.STRING:
            if field_def.unbounded_text:
                return [ColumnModel(name=name, column_type=ColumnType.LARGETEXT)]
            return [string_column(name, get_max_length_for_field(field_def))]

        return [ColumnModel(name=name, column_type=synapse_type)]

    def row_values(self, subtask: ExportSubtask) -> Dict[str, Optional[str]]:
        task = subtask.parent_task
        record_id = subtask.record_id
        data = subtask.record_data if isinstance(subtask.record_data, dict) else {}
        synapse_helper = self.manager.synapse_helper

        row = {}
        for field_def in self.field_definitions:
            name = field_def.name
            value = data.get(name)

            if self._converts_to_attachment(name):
                if isinstance(value, str):
                    value = self.manager.export_helper.upload_freeform_text_as_attachment(record_id, value)
                else:
                    value = None
                field_def = replace(field_def, type=FieldType.ATTACHMENT_BLOB)
            elif field_def.type == FieldType.TIMESTAMP:
                millis, tz_offset = parse_timestamp(value)
                row[name] = str(millis) if millis is not None else None
                row[name + TIMEZONE_SUFFIX] = tz_offset
                continue
            elif field_def.type == FieldType.MULTI_CHOICE:
                row.update(self._multi_choice_values(field_def, value))
                continue

            row[name] = synapse_helper.serialize_to_synapse_type(task.metrics, task.tmp_dir, record_id,
                                                                 field_def, value)
        return row

    @staticmethod
    def _multi_choice_values(field_def: FieldDefinition, value) -> Dict[str, Optional[str]]:
        if not isinstance(value, list):
            return {}

        selected = {str(one) for one in value}
        row = {multi_choice_column_name(field_def.name, choice): 'true' if choice in selected else 'false'
               for choice in field_def.multi_choice_answers}

        if field_def.allow_other_choices:
            others = sorted(selected - set(field_def.multi_choice_answers))
            if others:
                row[field_def.name + OTHER_CHOICE_SUFFIX] = ','.join(others)
        return row

    def handle(self, subtask: ExportSubtask):
        self.exporter.write_row(subtask)

    def upload_to_synapse_for_task(self, task: ExportTask):
        self.exporter.upload_to_synapse_for_task(task)


class SchemalessExportHandler(HealthDataExportHandler):
    """Captures records whose schema can't be resolved, with only the common columns"""

    table_kind = SYNAPSE_META_TABLES
    key_name = 'tableName'

    def __init__(self, manager, study_id: str):
        super().__init__(manager, study_id, schema=None)

    @property
    def key_value(self) -> str:
        return f"{self.study_id}-{MetaTableType.DEFAULT.value}"

    def get_tsv(self, task: ExportTask) -> Optional[TsvInfo]:
        return task.get_meta_tsv(self.study_id, MetaTableType.DEFAULT)

    def set_tsv(self, task: ExportTask, tsv_info: TsvInfo):
        task.set_meta_tsv(self.study_id, MetaTableType.DEFAULT, tsv_info)
