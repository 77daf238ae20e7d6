#!/usr/bin/env python3
"""
Export handler capability and the shared Synapse table lifecycle

Every handler processes one subtask at a time and commits once at end of
stream. Table handlers delegate table creation, additive migration, TSV
accumulation and upload to a SynapseTableExporter.
"""

import os
import threading
import time
from typing import Dict, List, Optional, Protocol

from bridgex.enhanced_logger import logger
from bridgex.exceptions import NonRetryableError, TsvError
from bridgex.export_task import ExportSubtask, ExportTask
from bridgex.export_utils import PhoneAppVersionInfo, sanitize_string
from bridgex.tsv_info import TsvInfo
from bridgex.type_mappings import (
    ColumnModel,
    ColumnType,
    is_compatible_column,
    is_modified_column,
    string_column,
)

EXTERNAL_ID_MAX_LENGTH = 128

COMMON_COLUMNS = [
    string_column('recordId', 36),
    string_column('healthCode', 36),
    string_column('externalId', EXTERNAL_ID_MAX_LENGTH),
    string_column('dataGroups', 100),
    string_column('uploadDate', 10),
    ColumnModel(name='createdOn', column_type=ColumnType.DATE),
    string_column('appVersion', 48),
    string_column('phoneInfo', 48),
]


class ExportHandler(Protocol):
    """Processes one subtask, and commits once at end of stream"""

    def handle(self, subtask: ExportSubtask) -> None:
        ...

    def upload_to_synapse_for_task(self, task: ExportTask) -> None:
        ...


class TableDefinition(Protocol):
    """What a table handler tells SynapseTableExporter about its table"""
    table_kind: str
    key_name: str
    key_value: str

    def column_definitions(self) -> List[ColumnModel]:
        ...

    def row_values(self, subtask: ExportSubtask) -> Dict[str, Optional[str]]:
        ...

    def get_tsv(self, task: ExportTask) -> Optional[TsvInfo]:
        ...

    def set_tsv(self, task: ExportTask, tsv_info: TsvInfo) -> None:
        ...


def common_row_values(subtask: ExportSubtask) -> Dict[str, Optional[str]]:
    """Values for the columns every health data table carries"""
    task = subtask.parent_task
    record = subtask.original_record
    record_id = record.get('id')
    app_info = PhoneAppVersionInfo.from_record(record)

    row = {
        'recordId': record_id,
        'healthCode': record.get('healthCode'),
        'externalId': sanitize_string(record.get('userExternalId'), EXTERNAL_ID_MAX_LENGTH, record_id),
        'uploadDate': task.exporter_date_string,
        'appVersion': app_info.app_version,
        'phoneInfo': app_info.phone_info,
    }

    data_groups = record.get('userDataGroups')
    if data_groups:
        row['dataGroups'] = ','.join(sorted(data_groups))

    created_on = record.get('createdOn')
    if created_on is not None:
        row['createdOn'] = str(int(created_on))

    return row


class SynapseTableExporter:
    """
    Lifecycle of one Synapse table within one run.

    The first subtask creates or migrates the table and opens the TSV under a
    per-table lock; later subtasks only contend on the TSV writer.
    """

    def __init__(self, manager, study_id: str, definition: TableDefinition):
        self.manager = manager
        self.study_id = study_id
        self.definition = definition
        self._init_lock = threading.Lock()
        self._table_id: Optional[str] = None

    @property
    def table_key(self) -> str:
        return self.definition.key_value

    @property
    def table_id(self) -> Optional[str]:
        return self._table_id

    def write_row(self, subtask: ExportSubtask):
        """
        Write one subtask's row, counting lines and errors per table.

        Raises whatever went wrong; the manager decides what to do about it.
        """
        task = subtask.parent_task
        metrics = task.metrics
        record_id = subtask.record_id
        try:
            tsv_info = self.init_tsv_for_task(task)
            if not tsv_info.is_ready:
                # Kept so a failed meta table can redrive the records it never wrote
                tsv_info.add_record_id(record_id)
                tsv_info.check_init_and_raise()

            row = common_row_values(subtask)
            row.update(self.definition.row_values(subtask))
            tsv_info.write_row(row)
            tsv_info.add_record_id(record_id)
            metrics.increment_counter(f"{self.table_key}.lineCount")
        except Exception as e:
            metrics.increment_counter(f"{self.table_key}.errorCount")
            logger.error(f"Error processing record {record_id} for table {self.table_key}: {e}")
            raise

    def init_tsv_for_task(self, task: ExportTask) -> TsvInfo:
        """Return the task's TSV for this table, creating the table and the file on first use"""
        tsv_info = self.definition.get_tsv(task)
        if tsv_info is not None:
            return tsv_info

        with self._init_lock:
            tsv_info = self.definition.get_tsv(task)
            if tsv_info is not None:
                return tsv_info

            with logger.table_context(self.table_key, "init"):
                try:
                    column_names = self._get_column_name_list(task)
                except Exception as e:
                    logger.error(f"Error initializing TSV: {e}")
                    tsv_info = TsvInfo.failed(e)
                else:
                    tsv_path = os.path.join(task.tmp_dir, f"{self.table_key}.tsv")
                    tsv_info = TsvInfo.open(column_names, tsv_path)

            self.definition.set_tsv(task, tsv_info)
            return tsv_info

    def _get_column_name_list(self, task: ExportTask) -> List[str]:
        column_defs = self.definition.column_definitions()
        side_index = self.manager.get_side_index(task)
        table_id = side_index.get_table_id(self.definition.table_kind, self.table_key)

        if table_id is None:
            server_columns = self._create_table_and_get_columns(task, column_defs)
        else:
            self._table_id = table_id
            server_columns = self._update_table_and_get_columns(table_id, column_defs)

        return [column.name for column in server_columns]

    def _create_table_and_get_columns(self, task: ExportTask, column_defs: List[ColumnModel]) -> List[ColumnModel]:
        synapse_helper = self.manager.synapse_helper
        table_id = synapse_helper.create_table_with_columns_and_acls(
            column_defs,
            self.manager.get_data_access_team_id(self.study_id),
            self.manager.principal_id,
            self.manager.get_synapse_project_id(self.study_id, task),
            self.table_key,
        )
        self._table_id = table_id
        self.manager.get_side_index(task).put_table_id(self.definition.table_kind, self.definition.key_name,
                                                       self.table_key, table_id)
        logger.table_created(self.table_key, table_id, len(column_defs))
        return synapse_helper.get_column_models_for_table(table_id)

    def _update_table_and_get_columns(self, table_id: str, column_defs: List[ColumnModel]) -> List[ColumnModel]:
        """
        Apply an additive migration to an existing table.

        Deleted or incompatibly modified columns raise NonRetryableError before
        anything is changed. With nothing to add or change, the live column list
        is returned without touching the table.
        """
        synapse_helper = self.manager.synapse_helper
        existing_columns = synapse_helper.get_column_models_for_table(table_id)
        existing_by_name = {column.name: column for column in existing_columns}
        defs_by_name = {column.name: column for column in column_defs}

        added = sorted(set(defs_by_name) - set(existing_by_name))
        deleted = sorted(set(existing_by_name) - set(defs_by_name))
        kept = sorted(set(existing_by_name) & set(defs_by_name))

        if deleted:
            raise NonRetryableError(f"Table {self.table_key} has deleted columns: {', '.join(deleted)}")

        modified = [name for name in kept if is_modified_column(existing_by_name[name], defs_by_name[name])]
        incompatible = [name for name in modified
                        if not is_compatible_column(existing_by_name[name], defs_by_name[name])]
        if incompatible:
            raise NonRetryableError(f"Table {self.table_key} has incompatible modified columns: "
                                    f"{', '.join(incompatible)}")

        if not added and not modified:
            return existing_columns

        logger.table_migrated(table_id, added, kept)
        created_columns = synapse_helper.create_column_models(column_defs)
        created_by_name = {column.name: column for column in created_columns}

        column_changes = []
        for column_def in column_defs:
            new_id = created_by_name[column_def.name].column_id
            existing = existing_by_name.get(column_def.name)
            if existing is None:
                column_changes.append({'oldColumnId': None, 'newColumnId': new_id})
            elif existing.column_id != new_id:
                column_changes.append({'oldColumnId': existing.column_id, 'newColumnId': new_id})

        # Kept columns stay in their live order; added columns take their declared slots
        kept_in_live_order = iter(column.name for column in existing_columns)
        ordered_names = [column_def.name if column_def.name not in existing_by_name else next(kept_in_live_order)
                         for column_def in column_defs]
        ordered_columns = [created_by_name[name] for name in ordered_names]

        ordered_column_ids = [column.column_id for column in ordered_columns]
        synapse_helper.update_table_columns(table_id, column_changes, ordered_column_ids)
        return ordered_columns

    def upload_to_synapse_for_task(self, task: ExportTask):
        """
        Flush the TSV and append it to the table.

        No-op when this table never saw a subtask. Empty TSVs are deleted
        without calling Synapse.

        Raises:
            TsvError: if the TSV failed to initialize or Synapse processed the wrong number of rows
        """
        tsv_info = self.definition.get_tsv(task)
        if tsv_info is None:
            return

        with logger.table_context(self.table_key, "upload"):
            tsv_info.flush_and_close_writer()
            tsv_path = tsv_info.file_path
            line_count = tsv_info.line_count

            if line_count > 0:
                tsv_info.verify_file()
                start = time.time()
                table_id = self._table_id
                rows_processed = self.manager.synapse_helper.upload_tsv_file_to_table(table_id, tsv_path)
                if rows_processed != line_count:
                    raise TsvError(f"Wrong number of lines processed importing to table={table_id}, "
                                   f"expected={line_count}, actual={rows_processed}")
                logger.table_committed(self.table_key, table_id, line_count, time.time() - start)

            os.remove(tsv_path)
