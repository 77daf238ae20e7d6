#!/usr/bin/env python3
"""
Upload schema model and per-run schema registry
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

from bridgex.enhanced_logger import logger
from bridgex.exceptions import SchemaNotFoundError


@dataclass(frozen=True, order=True)
class SchemaKey:
    """Schema identity: (study, schema id, revision). Also names the destination table."""
    study_id: str
    schema_id: str
    revision: int

    def __str__(self):
        return f"{self.study_id}-{self.schema_id}-v{self.revision}"

    def to_dict(self) -> dict:
        return {'studyId': self.study_id, 'schemaId': self.schema_id, 'revision': self.revision}

    @classmethod
    def from_dict(cls, data: dict) -> 'SchemaKey':
        return cls(study_id=data['studyId'], schema_id=data['schemaId'], revision=int(data['revision']))


class FieldType(Enum):
    """Bridge upload field types"""
    ATTACHMENT_BLOB = "attachment_blob"
    ATTACHMENT_CSV = "attachment_csv"
    ATTACHMENT_JSON_BLOB = "attachment_json_blob"
    ATTACHMENT_JSON_TABLE = "attachment_json_table"
    ATTACHMENT_V2 = "attachment_v2"
    BOOLEAN = "boolean"
    CALENDAR_DATE = "calendar_date"
    DURATION_V2 = "duration_v2"
    FLOAT = "float"
    INLINE_JSON_BLOB = "inline_json_blob"
    INT = "int"
    LARGE_TEXT_ATTACHMENT = "large_text_attachment"
    MULTI_CHOICE = "multi_choice"
    SINGLE_CHOICE = "single_choice"
    STRING = "string"
    TIME_V2 = "time_v2"
    TIMESTAMP = "timestamp"

    @classmethod
    def parse(cls, value: str) -> 'FieldType':
        return cls(value.lower())


ATTACHMENT_TYPES = frozenset({
    FieldType.ATTACHMENT_BLOB,
    FieldType.ATTACHMENT_CSV,
    FieldType.ATTACHMENT_JSON_BLOB,
    FieldType.ATTACHMENT_JSON_TABLE,
    FieldType.ATTACHMENT_V2,
})


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: FieldType
    required: bool = True
    max_length: Optional[int] = None
    unbounded_text: bool = False
    file_extension: Optional[str] = None
    multi_choice_answers: tuple = ()
    allow_other_choices: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'FieldDefinition':
        return cls(
            name=data['name'],
            type=FieldType.parse(data['type']),
            required=data.get('required', True),
            max_length=data.get('maxLength'),
            unbounded_text=bool(data.get('unboundedText', False)),
            file_extension=data.get('fileExtension'),
            multi_choice_answers=tuple(data.get('multiChoiceAnswerList') or ()),
            allow_other_choices=bool(data.get('allowOtherChoices', False)),
        )


@dataclass(frozen=True)
class UploadSchema:
    """Schema identity plus its ordered field definitions"""
    key: SchemaKey
    field_definitions: tuple = field(default_factory=tuple)

    @property
    def field_types(self) -> Dict[str, FieldType]:
        return {field_def.name: field_def.type for field_def in self.field_definitions}

    @classmethod
    def from_dict(cls, data: dict) -> 'UploadSchema':
        key = SchemaKey(study_id=data['studyId'], schema_id=data['schemaId'], revision=int(data['revision']))
        field_defs = tuple(FieldDefinition.from_dict(one) for one in data.get('fieldDefinitions', []))
        return cls(key=key, field_definitions=field_defs)


class SchemaRegistry:
    """
    Resolves schema keys to schemas, at most once per key per run.

    Resolution calls out to the Bridge server, so lookups for different keys run
    concurrently and only callers waiting on the same key block each other.
    """

    def __init__(self, fetch_schema: Callable[[SchemaKey], Optional[UploadSchema]]):
        self._fetch_schema = fetch_schema
        # None marks a key Bridge doesn't know
        self._cache: Dict[SchemaKey, Optional[UploadSchema]] = {}
        self._key_locks: Dict[SchemaKey, threading.Lock] = {}
        self._lock = threading.Lock()

    def _lock_for(self, key: SchemaKey) -> threading.Lock:
        with self._lock:
            if key not in self._key_locks:
                self._key_locks[key] = threading.Lock()
            return self._key_locks[key]

    def get_schema(self, key: SchemaKey) -> UploadSchema:
        """
        Get the schema for a key, fetching it on first use.

        Raises:
            SchemaNotFoundError: if the schema doesn't exist
        """
        if key not in self._cache:
            with self._lock_for(key):
                if key not in self._cache:
                    logger.debug(f"Fetching schema {key}")
                    self._cache[key] = self._fetch_schema(key)

        schema = self._cache[key]
        if schema is None:
            raise SchemaNotFoundError(f"Schema not found: {key}")
        return schema

    def clear(self):
        """Forget all cached schemas; called between runs"""
        with self._lock:
            self._cache.clear()
            self._key_locks.clear()
