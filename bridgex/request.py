#!/usr/bin/env python3
"""
Export request model

One request describes one export job: which records (a date, a date-time
range or an explicit record id list), which studies and tables, how to treat
sharing scopes, and redrive bookkeeping. Requests travel as JSON on the
request queue.
"""

import dataclasses
import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from bridgex.schema import SchemaKey


class SharingScope(Enum):
    NO_SHARING = "NO_SHARING"
    SPONSORS_AND_PARTNERS = "SPONSORS_AND_PARTNERS"
    ALL_QUALIFIED_RESEARCHERS = "ALL_QUALIFIED_RESEARCHERS"


class SharingMode(Enum):
    """Which sharing scopes a request exports"""
    ALL = "ALL"
    SHARED = "SHARED"
    PUBLIC_ONLY = "PUBLIC_ONLY"

    def accepted_scopes(self) -> FrozenSet[SharingScope]:
        if self is SharingMode.ALL:
            return frozenset(SharingScope)
        if self is SharingMode.SHARED:
            return frozenset({SharingScope.SPONSORS_AND_PARTNERS, SharingScope.ALL_QUALIFIED_RESEARCHERS})
        return frozenset({SharingScope.ALL_QUALIFIED_RESEARCHERS})

    def should_exclude_scope(self, scope: SharingScope) -> bool:
        return scope not in self.accepted_scopes()


@dataclass(frozen=True)
class ExporterRequest:
    export_date: Optional[date] = None
    start_date_time: Optional[datetime] = None
    end_date_time: Optional[datetime] = None
    record_id_s3_override: Optional[str] = None
    exporter_ddb_prefix_override: Optional[str] = None
    synapse_project_override_map: Optional[Dict[str, str]] = None
    study_whitelist: Optional[FrozenSet[str]] = None
    table_whitelist: Optional[FrozenSet[SchemaKey]] = None
    sharing_mode: SharingMode = SharingMode.SHARED
    redrive_count: int = 0
    tag: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        """
        Check request consistency.

        Raises:
            ValueError: describing the first violated rule
        """
        has_start = self.start_date_time is not None
        has_end = self.end_date_time is not None
        if has_start != has_end:
            raise ValueError("startDateTime and endDateTime must both be specified or both be absent.")
        if has_start and not self.start_date_time < self.end_date_time:
            raise ValueError("startDateTime must be before endDateTime.")
        if has_start and self.study_whitelist is None:
            raise ValueError("If start- and endDateTime are specified, studyWhitelist must also be specified.")

        num_record_sources = sum([
            has_start,
            self.export_date is not None,
            bool(self.record_id_s3_override and self.record_id_s3_override.strip()),
        ])
        if num_record_sources != 1:
            raise ValueError("Exactly one of date, start/endDateTime, and recordIdS3Override must be specified.")

        has_prefix_override = bool(self.exporter_ddb_prefix_override and self.exporter_ddb_prefix_override.strip())
        has_project_override = self.synapse_project_override_map is not None
        if has_prefix_override != has_project_override:
            raise ValueError("exporterDdbPrefixOverride and synapseProjectOverrideMap must both be specified or "
                             "both be absent.")
        if has_project_override and not self.synapse_project_override_map:
            raise ValueError("If synapseProjectOverrideMap is specified, it can't be empty.")
        if self.study_whitelist is not None and not self.study_whitelist:
            raise ValueError("If studyWhitelist is specified, it can't be empty.")
        if self.table_whitelist is not None and not self.table_whitelist:
            raise ValueError("If tableWhitelist is specified, it can't be empty.")
        if self.redrive_count < 0:
            raise ValueError("redriveCount can't be negative.")

    def copy(self, **changes) -> 'ExporterRequest':
        """Copy with changes; the copy is validated again"""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        data = {
            'sharingMode': self.sharing_mode.value,
            'redriveCount': self.redrive_count,
        }
        if self.export_date is not None:
            data['date'] = self.export_date.isoformat()
        if self.start_date_time is not None:
            data['startDateTime'] = self.start_date_time.isoformat()
            data['endDateTime'] = self.end_date_time.isoformat()
        if self.record_id_s3_override:
            data['recordIdS3Override'] = self.record_id_s3_override
        if self.exporter_ddb_prefix_override:
            data['exporterDdbPrefixOverride'] = self.exporter_ddb_prefix_override
        if self.synapse_project_override_map is not None:
            data['synapseProjectOverrideMap'] = dict(sorted(self.synapse_project_override_map.items()))
        if self.study_whitelist is not None:
            data['studyWhitelist'] = sorted(self.study_whitelist)
        if self.table_whitelist is not None:
            data['tableWhitelist'] = [key.to_dict() for key in sorted(self.table_whitelist)]
        if self.tag:
            data['tag'] = self.tag
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> 'ExporterRequest':
        study_whitelist = data.get('studyWhitelist')
        table_whitelist = data.get('tableWhitelist')
        return cls(
            export_date=date.fromisoformat(data['date']) if data.get('date') else None,
            start_date_time=datetime.fromisoformat(data['startDateTime']) if data.get('startDateTime') else None,
            end_date_time=datetime.fromisoformat(data['endDateTime']) if data.get('endDateTime') else None,
            record_id_s3_override=data.get('recordIdS3Override'),
            exporter_ddb_prefix_override=data.get('exporterDdbPrefixOverride'),
            synapse_project_override_map=data.get('synapseProjectOverrideMap'),
            study_whitelist=frozenset(study_whitelist) if study_whitelist is not None else None,
            table_whitelist=(frozenset(SchemaKey.from_dict(one) for one in table_whitelist)
                             if table_whitelist is not None else None),
            sharing_mode=SharingMode(data.get('sharingMode', SharingMode.SHARED.value)),
            redrive_count=int(data.get('redriveCount', 0)),
            tag=data.get('tag'),
        )

    @classmethod
    def from_json(cls, text: str) -> 'ExporterRequest':
        return cls.from_dict(json.loads(text))

    def __str__(self):
        return self.to_json()
