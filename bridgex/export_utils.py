"""
Helpers shared by the export handlers: text sanitizing, schema keys for
records, phone/app version info and timestamp parsing.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Tuple

from bridgex.enhanced_logger import logger
from bridgex.schema import SchemaKey

HTML_TAG_PATTERN = re.compile(r'<[^>]*>')
TSV_UNSAFE_PATTERN = re.compile(r'[\n\r\t]+')

APP_VERSION_MAX_LENGTH = 48
PHONE_INFO_MAX_LENGTH = 48

# Legacy schemas whose free-form text fields predate the string length limit.
# These fields are exported as file handles instead of strings.
SCHEMA_FIELDS_TO_CONVERT = {
    SchemaKey('breastcancer', 'BreastCancer-DailyJournal', 1): frozenset({
        'content_data.APHMoodLogNoteText',
        'DailyJournalStep103_data.content',
    }),
    SchemaKey('breastcancer', 'BreastCancer-ExerciseSurvey', 1): frozenset({
        'exercisesurvey101_data.result',
        'exercisesurvey102_data.result',
        'exercisesurvey103_data.result',
        'exercisesurvey104_data.result',
        'exercisesurvey105_data.result',
        'exercisesurvey106_data.result',
    }),
}


def sanitize_string(value, max_length: Optional[int], record_id: str) -> Optional[str]:
    """
    Make a string safe for a TSV cell.

    Strips HTML tags, collapses tabs and newlines into a single space and
    truncates to max_length (logging an error when it does).
    """
    if value is None:
        return None

    value = HTML_TAG_PATTERN.sub('', str(value))
    value = TSV_UNSAFE_PATTERN.sub(' ', value)

    if max_length is not None and len(value) > max_length:
        logger.error(f"Truncating string {value} to length {max_length} for record {record_id}")
        value = value[:max_length]

    return value


def sanitize_json_value(node: dict, field_name: str, max_length: int, record_id: str) -> Optional[str]:
    value = node.get(field_name)
    if value is None:
        return None
    return sanitize_string(value, max_length, record_id)


def should_convert_freeform_text_to_attachment(schema_key: SchemaKey, field_name: str) -> bool:
    return field_name in SCHEMA_FIELDS_TO_CONVERT.get(schema_key, ())


def get_schema_key_for_record(record: dict) -> SchemaKey:
    return SchemaKey(study_id=record['studyId'], schema_id=record['schemaId'],
                     revision=int(record['schemaRevision']))


def parse_json_field(record: dict, field_name: str) -> Optional[dict]:
    """Parse a JSON string attribute of a record. Raises json.JSONDecodeError on bad input."""
    raw = record.get(field_name)
    if raw is None or raw == '':
        return None
    if isinstance(raw, (dict, list)):
        return raw
    return json.loads(raw)


@dataclass(frozen=True)
class PhoneAppVersionInfo:
    app_version: Optional[str] = None
    phone_info: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> 'PhoneAppVersionInfo':
        """Read app version and phone info from record metadata. Bad metadata yields empty info."""
        record_id = record.get('id')
        metadata = record.get('metadata')
        if not metadata or (isinstance(metadata, str) and not metadata.strip()):
            return cls()

        try:
            metadata_json = parse_json_field(record, 'metadata')
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing metadata for record ID {record_id}: {e}")
            return cls()

        if not isinstance(metadata_json, dict):
            return cls()

        return cls(
            app_version=sanitize_json_value(metadata_json, 'appVersion', APP_VERSION_MAX_LENGTH, record_id),
            phone_info=sanitize_json_value(metadata_json, 'phoneInfo', PHONE_INFO_MAX_LENGTH, record_id),
        )


def format_timezone_offset(dt: datetime) -> str:
    """Format a datetime's UTC offset as +HHMM / -HHMM"""
    offset = dt.utcoffset()
    total_minutes = int(offset.total_seconds() // 60) if offset is not None else 0
    sign = '-' if total_minutes < 0 else '+'
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}{minutes:02d}"


def parse_timestamp(value) -> Tuple[Optional[int], Optional[str]]:
    """
    Parse a timestamp field value into (epoch millis, timezone offset).

    ISO-8601 strings keep their offset (UTC when none is given). Numbers are
    epoch milliseconds in +0000. Anything else yields (None, None).
    """
    if value is None or isinstance(value, bool):
        return None, None

    if isinstance(value, (int, float, Decimal)):
        return int(value), '+0000'

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None, None
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None, None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return round(dt.timestamp() * 1000), format_timezone_offset(dt)

    return None, None
