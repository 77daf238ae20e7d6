"""
Type Mappings between Bridge upload field types and Synapse table columns

This module holds the Bridge-to-Synapse column type mapping, string length bounds,
and the table of column type changes Synapse tables may go through.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bridgex.exceptions import NonRetryableError
from bridgex.schema import FieldType


class ColumnType(Enum):
    """Synapse table column types"""
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    DOUBLE = "DOUBLE"
    FILEHANDLEID = "FILEHANDLEID"
    INTEGER = "INTEGER"
    LARGETEXT = "LARGETEXT"
    STRING = "STRING"


@dataclass(frozen=True)
class ColumnModel:
    """A Synapse column. column_id is None until the column has been created in Synapse."""
    name: str
    column_type: ColumnType
    maximum_size: Optional[int] = None
    column_id: Optional[str] = None

    def without_id(self) -> 'ColumnModel':
        return ColumnModel(name=self.name, column_type=self.column_type, maximum_size=self.maximum_size)

    def to_json(self) -> dict:
        data = {'name': self.name, 'columnType': self.column_type.value}
        if self.maximum_size is not None:
            data['maximumSize'] = self.maximum_size
        if self.column_id is not None:
            data['id'] = self.column_id
        return data

    @classmethod
    def from_json(cls, data: dict) -> 'ColumnModel':
        max_size = data.get('maximumSize')
        return cls(
            name=data['name'],
            column_type=ColumnType(data['columnType']),
            maximum_size=int(max_size) if max_size is not None else None,
            column_id=data.get('id'),
        )


def string_column(name: str, max_size: int) -> ColumnModel:
    return ColumnModel(name=name, column_type=ColumnType.STRING, maximum_size=max_size)


# Bridge type -> Synapse type. MULTI_CHOICE and TIMESTAMP expand into several
# columns and are handled by the health data handler.
BRIDGE_TYPE_TO_SYNAPSE_TYPE = {
    FieldType.ATTACHMENT_BLOB: ColumnType.FILEHANDLEID,
    FieldType.ATTACHMENT_CSV: ColumnType.FILEHANDLEID,
    FieldType.ATTACHMENT_JSON_BLOB: ColumnType.FILEHANDLEID,
    FieldType.ATTACHMENT_JSON_TABLE: ColumnType.FILEHANDLEID,
    FieldType.ATTACHMENT_V2: ColumnType.FILEHANDLEID,
    FieldType.BOOLEAN: ColumnType.BOOLEAN,
    FieldType.CALENDAR_DATE: ColumnType.STRING,
    FieldType.DURATION_V2: ColumnType.STRING,
    FieldType.FLOAT: ColumnType.DOUBLE,
    FieldType.INLINE_JSON_BLOB: ColumnType.STRING,
    FieldType.INT: ColumnType.INTEGER,
    FieldType.LARGE_TEXT_ATTACHMENT: ColumnType.LARGETEXT,
    FieldType.SINGLE_CHOICE: ColumnType.STRING,
    FieldType.STRING: ColumnType.STRING,
    FieldType.TIME_V2: ColumnType.STRING,
}

BRIDGE_TYPE_TO_MAX_LENGTH = {
    FieldType.CALENDAR_DATE: 10,
    FieldType.DURATION_V2: 24,
    FieldType.TIME_V2: 12,
}

BRIDGE_TYPE_TO_FILE_EXTENSION = {
    FieldType.ATTACHMENT_CSV: '.csv',
    FieldType.ATTACHMENT_JSON_BLOB: '.json',
    FieldType.ATTACHMENT_JSON_TABLE: '.json',
}

DEFAULT_MAX_LENGTH = 100

# Width of a "+HHMM" timezone offset column
TIMEZONE_MAX_LENGTH = 5

# Implicit string width of numeric columns, used when a numeric column is converted to STRING
SYNAPSE_TYPE_TO_MAX_LENGTH = {
    ColumnType.DOUBLE: 22,
    ColumnType.INTEGER: 20,
}

# Column type changes that keep existing data readable
ALLOWED_OLD_TYPE_TO_NEW_TYPE = frozenset({
    (ColumnType.INTEGER, ColumnType.DOUBLE),
    (ColumnType.DATE, ColumnType.INTEGER),
    (ColumnType.DATE, ColumnType.DOUBLE),
    (ColumnType.INTEGER, ColumnType.DATE),
    (ColumnType.DOUBLE, ColumnType.STRING),
    (ColumnType.INTEGER, ColumnType.STRING),
    (ColumnType.DOUBLE, ColumnType.LARGETEXT),
    (ColumnType.INTEGER, ColumnType.LARGETEXT),
    (ColumnType.STRING, ColumnType.LARGETEXT),
})


def get_max_length_for_field(field_def) -> int:
    """Max string length for a field: field def first, then type default, then global default"""
    if field_def.max_length is not None:
        return field_def.max_length
    return BRIDGE_TYPE_TO_MAX_LENGTH.get(field_def.type, DEFAULT_MAX_LENGTH)


def is_compatible_column(old_column: ColumnModel, new_column: ColumnModel) -> bool:
    """
    Check whether an existing column can be replaced by a new definition of the same name.

    Args:
        old_column: live column in the Synapse table
        new_column: column definition we want

    Returns:
        bool: True if the type is unchanged or an allowed conversion, and string
        columns don't shrink

    Raises:
        NonRetryableError: if a string column has no size to compare against
    """
    if old_column.name != new_column.name:
        raise ValueError(f"Column names don't match: {old_column.name} vs {new_column.name}")

    old_type = old_column.column_type
    new_type = new_column.column_type
    if old_type != new_type and (old_type, new_type) not in ALLOWED_OLD_TYPE_TO_NEW_TYPE:
        return False

    if new_type != ColumnType.STRING:
        # Size only matters for strings
        return True

    old_size = old_column.maximum_size
    if old_size is None:
        old_size = SYNAPSE_TYPE_TO_MAX_LENGTH.get(old_type)
    new_size = new_column.maximum_size
    if old_size is None or new_size is None:
        raise NonRetryableError(f"Column {old_column.name} is a string without a maximum size")

    return new_size >= old_size


def is_modified_column(old_column: ColumnModel, new_column: ColumnModel) -> bool:
    return (old_column.column_type != new_column.column_type or
            old_column.maximum_size != new_column.maximum_size)

