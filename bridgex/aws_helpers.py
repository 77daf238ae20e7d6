#!/usr/bin/env python3
"""
AWS collaborators: S3 blob store and the DynamoDB source record store
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional

import boto3
from boto3.dynamodb.conditions import Key


class S3Helper:
    """Read and write blobs by bucket and key"""

    def __init__(self, s3_client=None, region: Optional[str] = None):
        self.s3 = s3_client or boto3.client('s3', region_name=region)

    def read_bytes(self, bucket: str, key: str) -> bytes:
        obj = self.s3.get_object(Bucket=bucket, Key=key)
        return obj['Body'].read()

    def read_text(self, bucket: str, key: str) -> str:
        return self.read_bytes(bucket, key).decode('utf-8')

    def read_lines(self, bucket: str, key: str) -> List[str]:
        """Read a newline-delimited blob, skipping blank lines"""
        return [line.strip() for line in self.read_text(bucket, key).splitlines() if line.strip()]

    def write_bytes(self, bucket: str, key: str, data: bytes):
        self.s3.put_object(Bucket=bucket, Key=key, Body=data)

    def write_lines(self, bucket: str, key: str, lines):
        self.write_bytes(bucket, key, '\n'.join(lines).encode('utf-8'))

    def download_file(self, bucket: str, key: str, path: str):
        self.s3.download_file(bucket, key, path)


@dataclass(frozen=True)
class StudyInfo:
    """Per-study export configuration"""
    data_access_team_id: Optional[int] = None
    synapse_project_id: Optional[str] = None
    disable_export: bool = False
    uses_custom_export_schedule: bool = False


class DynamoHelper:
    """
    Source record store backed by DynamoDB tables.

    Records are returned as plain dicts (DynamoDB numbers arrive as Decimal).
    """

    def __init__(self, record_table: str, study_table: str, attachment_table: str,
                 dynamodb_resource=None, region: Optional[str] = None):
        dynamodb = dynamodb_resource or boto3.resource('dynamodb', region_name=region)
        self.record_table = dynamodb.Table(record_table)
        self.study_table = dynamodb.Table(study_table)
        self.attachment_table = dynamodb.Table(attachment_table)

    def get_record(self, record_id: str) -> Optional[dict]:
        response = self.record_table.get_item(Key={'id': record_id})
        return response.get('Item')

    def _query_ids(self, **query_args) -> Iterator[str]:
        while True:
            response = self.record_table.query(**query_args)
            for item in response.get('Items', []):
                yield item['id']
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                break
            query_args['ExclusiveStartKey'] = last_key

    def query_record_ids_by_upload_date(self, upload_date: str) -> Iterator[str]:
        return self._query_ids(IndexName='uploadDate-index',
                               KeyConditionExpression=Key('uploadDate').eq(upload_date))

    def query_record_ids_for_study(self, study_id: str, start_millis: int, end_millis: int) -> Iterator[str]:
        """Record ids for one study uploaded in [start_millis, end_millis]"""
        return self._query_ids(IndexName='studyId-uploadedOn-index',
                               KeyConditionExpression=(Key('studyId').eq(study_id) &
                                                       Key('uploadedOn').between(start_millis, end_millis)))

    def get_study_info(self, study_id: str) -> Optional[StudyInfo]:
        """Export settings for a study, or None if the study isn't configured for export"""
        item = self.study_table.get_item(Key={'identifier': study_id}).get('Item')
        if not item:
            return None

        team_id = item.get('synapseDataAccessTeamId')
        project_id = item.get('synapseProjectId')
        if team_id is None or not project_id:
            return None

        return StudyInfo(
            data_access_team_id=int(team_id),
            synapse_project_id=project_id,
            disable_export=bool(item.get('disableExport', False)),
            uses_custom_export_schedule=bool(item.get('usesCustomExportSchedule', False)),
        )

    def reserve_attachment(self, attachment_id: str, record_id: str):
        self.attachment_table.put_item(Item={'id': attachment_id, 'recordId': record_id})
