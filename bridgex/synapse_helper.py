#!/usr/bin/env python3
"""
Synapse table operations used by the export handlers

Column and table creation with ACLs, schema change transactions, TSV uploads
with row count verification, and serialization of record values into TSV cells.
"""

import json
import os
from decimal import Decimal
from typing import List, Optional

from bridgex.enhanced_logger import logger
from bridgex.exceptions import BridgeExporterError, SynapseServiceError
from bridgex.export_utils import sanitize_string
from bridgex.metrics import Metrics
from bridgex.schema import ATTACHMENT_TYPES, FieldDefinition, FieldType
from bridgex.type_mappings import (
    BRIDGE_TYPE_TO_FILE_EXTENSION,
    ColumnModel,
    get_max_length_for_field,
)

ACCESS_TYPE_ALL = ['READ', 'DOWNLOAD', 'UPDATE', 'DELETE', 'CREATE', 'CHANGE_PERMISSIONS',
                   'CHANGE_SETTINGS', 'MODERATE']
ACCESS_TYPE_READ = ['READ', 'DOWNLOAD']

STRING_FIELD_TYPES = frozenset({
    FieldType.CALENDAR_DATE,
    FieldType.DURATION_V2,
    FieldType.INLINE_JSON_BLOB,
    FieldType.SINGLE_CHOICE,
    FieldType.STRING,
    FieldType.TIME_V2,
})


def _is_number(value) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


class SynapseHelper:

    def __init__(self, client, s3_helper, attachment_bucket: str):
        self.client = client
        self.s3_helper = s3_helper
        self.attachment_bucket = attachment_bucket

    def is_synapse_writable(self) -> bool:
        return self.client.is_writable()

    def create_column_models(self, columns: List[ColumnModel]) -> List[ColumnModel]:
        """Create (or resolve) column models. Existing definitions come back with their existing ids."""
        created = self.client.create_column_models([column.without_id().to_json() for column in columns])
        return [ColumnModel.from_json(one) for one in created]

    def get_column_models_for_table(self, table_id: str) -> List[ColumnModel]:
        return [ColumnModel.from_json(one) for one in self.client.get_column_models_for_table(table_id)]

    def create_table_with_columns_and_acls(self, columns: List[ColumnModel], data_access_team_id: int,
                                           principal_id: int, project_id: str, table_name: str) -> str:
        """
        Create a table and its columns, and grant access.

        The exporter principal gets full access; the study's data access team gets read and download.

        Returns:
            str: the new table id

        Raises:
            BridgeExporterError: if Synapse created a different number of columns than requested
        """
        created_columns = self.create_column_models(columns)
        if len(created_columns) != len(columns):
            raise BridgeExporterError(f"Error creating Synapse table {table_name}: Tried to create "
                                      f"{len(columns)} columns. Actual: {len(created_columns)} columns.")

        column_ids = [column.column_id for column in created_columns]
        table = self.client.create_table(table_name, project_id, column_ids)
        table_id = table['id']

        self.client.create_acl(table_id, [
            {'principalId': principal_id, 'accessType': ACCESS_TYPE_ALL},
            {'principalId': data_access_team_id, 'accessType': ACCESS_TYPE_READ},
        ])
        return table_id

    def table_exists(self, table_id: str) -> bool:
        try:
            self.client.get_entity(table_id)
        except SynapseServiceError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def update_table_columns(self, table_id: str, column_changes: List[dict], ordered_column_ids: List[str]):
        self.client.update_table_schema(table_id, column_changes, ordered_column_ids)

    def append_rows_to_table(self, table_id: str, rows: List[dict]):
        self.client.append_rows(table_id, rows)

    def upload_tsv_file_to_table(self, table_id: str, tsv_path: str) -> int:
        """Upload a TSV to a table. Returns the number of rows Synapse reports processed."""
        file_handle_id = self.client.upload_file(tsv_path, content_type='text/tab-separated-values')
        return self.client.upload_tsv_to_table(table_id, file_handle_id)

    def serialize_to_synapse_type(self, metrics: Metrics, tmp_dir: str, record_id: str,
                                  field_def: FieldDefinition, value) -> Optional[str]:
        """
        Convert one record value into its TSV cell.

        Args:
            metrics: task metrics, counts attachment uploads
            tmp_dir: scratch dir for attachment downloads
            record_id: for logging
            field_def: field definition driving the conversion
            value: JSON value from the record data

        Returns:
            str or None: the cell value, None when the value is absent or doesn't fit the type
        """
        if value is None:
            return None

        field_type = field_def.type
        if field_type in ATTACHMENT_TYPES:
            # Attachment values are attachment ids, which are also S3 keys
            if isinstance(value, str):
                metrics.increment_counter("numAttachments")
                return self.upload_from_s3_to_file_handle(tmp_dir, field_def, value)
            return None

        if field_type == FieldType.BOOLEAN:
            if isinstance(value, bool):
                return 'true' if value else 'false'
            return None

        if field_type in STRING_FIELD_TYPES:
            text = value if isinstance(value, str) else json.dumps(value)
            max_length = None if field_def.unbounded_text else get_max_length_for_field(field_def)
            return sanitize_string(text, max_length, record_id)

        if field_type == FieldType.FLOAT:
            if _is_number(value):
                return str(value)
            return None

        if field_type == FieldType.INT:
            if _is_number(value):
                return str(int(value))
            return None

        if field_type == FieldType.LARGE_TEXT_ATTACHMENT:
            if isinstance(value, str):
                text = self.download_large_text_attachment(value)
                return sanitize_string(text, None, record_id)
            return None

        logger.error(f"Unexpected type {field_type.name} for record ID {record_id}")
        return None

    def download_large_text_attachment(self, attachment_id: str) -> str:
        return self.s3_helper.read_text(self.attachment_bucket, attachment_id)

    def upload_from_s3_to_file_handle(self, tmp_dir: str, field_def: FieldDefinition,
                                      attachment_id: str) -> Optional[str]:
        """Copy an attachment from S3 into a Synapse file handle. Empty attachments are skipped."""
        temp_path = os.path.join(tmp_dir, generate_filename(field_def, attachment_id))
        try:
            self.s3_helper.download_file(self.attachment_bucket, attachment_id, temp_path)
            if os.path.getsize(temp_path) == 0:
                return None
            return self.client.upload_file(temp_path, content_type=_content_type_for(field_def))
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)


def _content_type_for(field_def: FieldDefinition) -> str:
    if field_def.type == FieldType.ATTACHMENT_CSV:
        return 'text/csv'
    if field_def.type in (FieldType.ATTACHMENT_JSON_BLOB, FieldType.ATTACHMENT_JSON_TABLE):
        return 'text/json'
    return 'application/octet-stream'


def generate_filename(field_def: FieldDefinition, attachment_id: str) -> str:
    """
    Unique file name for an attachment.

    Newer attachment ids already end with the field name and are used as is.
    Legacy ids become <field base name>-<attachment id><extension>.
    """
    field_name = field_def.name
    if attachment_id.endswith(field_name):
        return attachment_id

    file_ext = field_def.file_extension or BRIDGE_TYPE_TO_FILE_EXTENSION.get(field_def.type)
    if file_ext is None:
        dot_index = field_name.rfind('.')
        if 0 < dot_index < len(field_name) - 1:
            file_ext = field_name[dot_index:]

    if file_ext is None:
        return f"{field_name}-{attachment_id}"

    base_name = field_name[:-len(file_ext)] if field_name.endswith(file_ext) else field_name
    return f"{base_name}-{attachment_id}{file_ext}"
