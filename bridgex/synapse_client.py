#!/usr/bin/env python3
"""
Synapse REST client
Thin httpx wrapper over the Synapse table, entity and file upload APIs, with rate limiting
"""

import hashlib
import math
import os
import threading
import time
from typing import Dict, List, Optional

import httpx

from bridgex.enhanced_logger import logger
from bridgex.exceptions import SynapseServiceError
from bridgex.tsv_info import ESCAPE_CHARACTER, QUOTE_CHARACTER, SEPARATOR

CONCRETE_TYPE_PREFIX = 'org.sagebionetworks.repo.model'
PART_SIZE_BYTES = 8 * 1024 * 1024
MAX_PARTS = 10000


class RateLimiter:
    """Blocks callers so that at most `rate` calls start per `period` seconds"""

    def __init__(self, rate: float, period: float = 1.0):
        self.interval = period / rate if rate > 0 else 0.0
        self.next_time = 0.0
        self.lock = threading.Lock()

    def acquire(self):
        if self.interval <= 0:
            return
        with self.lock:
            now = time.monotonic()
            wait = self.next_time - now
            self.next_time = max(now, self.next_time) + self.interval
        if wait > 0:
            time.sleep(wait)


class SynapseClient:
    """
    Client for the Synapse REST API.

    Non-2xx responses raise SynapseServiceError with the HTTP status. Network
    failures surface as httpx.TransportError.
    """

    def __init__(self, endpoint: str, auth_token: str, rate_per_second: float = 10,
                 column_rate_per_minute: float = 24, async_poll_seconds: float = 1.0,
                 async_timeout_seconds: float = 300.0, http_client: Optional[httpx.Client] = None):
        self._base_url = endpoint.rstrip('/')
        self._client = http_client or httpx.Client(timeout=60.0)
        self._headers = {'Content-Type': 'application/json'}
        if auth_token:
            self._headers['Authorization'] = f"Bearer {auth_token}"
        self._rate_limiter = RateLimiter(rate_per_second)
        self._column_rate_limiter = RateLimiter(column_rate_per_minute, 60.0)
        self._async_poll_seconds = async_poll_seconds
        self._async_timeout_seconds = async_timeout_seconds

    def _request(self, method: str, path: str, json_body=None, params=None, expected=(200, 201)):
        self._rate_limiter.acquire()
        url = f"{self._base_url}{path}"
        response = self._client.request(method, url, json=json_body, params=params, headers=self._headers)
        if response.status_code not in expected:
            raise SynapseServiceError(response.status_code, response.text[:500])
        return response

    def _json(self, method: str, path: str, json_body=None, params=None) -> dict:
        response = self._request(method, path, json_body=json_body, params=params)
        return response.json() if response.content else {}

    # Status
    def get_stack_status(self) -> str:
        return self._json('GET', '/repo/v1/status').get('status', 'DOWN')

    def is_writable(self) -> bool:
        return self.get_stack_status() == 'READ_WRITE'

    # Columns and tables
    def create_column_models(self, columns: List[dict]) -> List[dict]:
        body = {'concreteType': f'{CONCRETE_TYPE_PREFIX}.ListWrapper', 'list': columns}
        return self._json('POST', '/repo/v1/column/batch', body).get('list', [])

    def create_table(self, name: str, parent_id: str, column_ids: List[str]) -> dict:
        body = {
            'concreteType': f'{CONCRETE_TYPE_PREFIX}.table.TableEntity',
            'name': name,
            'parentId': parent_id,
            'columnIds': column_ids,
        }
        return self._json('POST', '/repo/v1/entity', body)

    def create_acl(self, entity_id: str, resource_access: List[Dict]) -> dict:
        body = {'id': entity_id, 'resourceAccess': resource_access}
        return self._json('POST', f'/repo/v1/entity/{entity_id}/acl', body)

    def get_entity(self, entity_id: str) -> dict:
        return self._json('GET', f'/repo/v1/entity/{entity_id}')

    def get_column_models_for_table(self, table_id: str) -> List[dict]:
        self._column_rate_limiter.acquire()
        return self._json('GET', f'/repo/v1/entity/{table_id}/column').get('results', [])

    # Async table transactions
    def _run_table_transaction(self, table_id: str, changes: List[dict]) -> dict:
        body = {
            'concreteType': f'{CONCRETE_TYPE_PREFIX}.table.TableUpdateTransactionRequest',
            'entityId': table_id,
            'changes': changes,
        }
        token = self._json('POST', f'/repo/v1/entity/{table_id}/table/transaction/async/start', body)['token']

        deadline = time.monotonic() + self._async_timeout_seconds
        while True:
            response = self._request('GET', f'/repo/v1/entity/{table_id}/table/transaction/async/get/{token}',
                                     expected=(200, 202))
            if response.status_code == 200:
                return response.json()
            if time.monotonic() > deadline:
                raise TimeoutError(f"Timed out waiting for table transaction {token} on table {table_id}")
            time.sleep(self._async_poll_seconds)

    def update_table_schema(self, table_id: str, column_changes: List[dict], ordered_column_ids: List[str]):
        """Apply column changes ({oldColumnId, newColumnId}) and column order in one transaction"""
        change = {
            'concreteType': f'{CONCRETE_TYPE_PREFIX}.table.TableSchemaChangeRequest',
            'entityId': table_id,
            'changes': column_changes,
            'orderedColumnIds': ordered_column_ids,
        }
        return self._run_table_transaction(table_id, [change])

    def upload_tsv_to_table(self, table_id: str, file_handle_id: str) -> int:
        """Append a TSV file handle to a table. Returns the number of rows Synapse processed."""
        change = {
            'concreteType': f'{CONCRETE_TYPE_PREFIX}.table.UploadToTableRequest',
            'tableId': table_id,
            'uploadFileHandleId': file_handle_id,
            'csvTableDescriptor': {
                'separator': SEPARATOR,
                'quoteCharacter': QUOTE_CHARACTER,
                'escapeCharacter': ESCAPE_CHARACTER,
                'isFirstLineHeader': True,
            },
        }
        result = self._run_table_transaction(table_id, [change])
        responses = result.get('results') or result.get('responses') or []
        return sum(int(one.get('rowsProcessed', 0)) for one in responses)

    def append_rows(self, table_id: str, rows: List[Dict[str, str]]) -> dict:
        """Append partial rows, each a map of column id to value"""
        change = {
            'concreteType': f'{CONCRETE_TYPE_PREFIX}.table.AppendableRowSetRequest',
            'entityId': table_id,
            'toAppend': {
                'concreteType': f'{CONCRETE_TYPE_PREFIX}.table.PartialRowSet',
                'tableId': table_id,
                'rows': [{'values': one} for one in rows],
            },
        }
        return self._run_table_transaction(table_id, [change])

    # Files
    def upload_file(self, path: str, content_type: str = 'text/plain') -> str:
        """Multipart upload of a local file. Returns the new file handle id."""
        file_size = os.path.getsize(path)
        part_size = max(PART_SIZE_BYTES, math.ceil(file_size / MAX_PARTS))
        num_parts = max(1, math.ceil(file_size / part_size))

        md5 = hashlib.md5()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b''):
                md5.update(chunk)

        status = self._json('POST', '/file/v1/file/multipart', {
            'concreteType': 'org.sagebionetworks.repo.model.file.MultipartUploadRequest',
            'fileName': os.path.basename(path),
            'contentType': content_type,
            'fileSizeBytes': file_size,
            'contentMD5Hex': md5.hexdigest(),
            'partSizeBytes': part_size,
        })
        upload_id = status['uploadId']

        if status.get('state') != 'COMPLETED':
            with open(path, 'rb') as f:
                for part_number in range(1, num_parts + 1):
                    data = f.read(part_size)
                    self._upload_part(upload_id, part_number, data)
            status = self._json('PUT', f'/file/v1/file/multipart/{upload_id}/complete')

        file_handle_id = status.get('resultFileHandleId')
        if not file_handle_id:
            raise SynapseServiceError(500, f"Multipart upload {upload_id} finished without a file handle")
        logger.debug(f"Uploaded {path} to file handle {file_handle_id}")
        return file_handle_id

    def _upload_part(self, upload_id: str, part_number: int, data: bytes):
        batch = self._json('POST', f'/file/v1/file/multipart/{upload_id}/presigned/url/batch',
                           {'uploadId': upload_id, 'partNumbers': [part_number]})
        presigned = batch['partPresignedUrls'][0]
        response = self._client.put(presigned['uploadPresignedUrl'], content=data,
                                    headers=presigned.get('signedHeaders') or {})
        if response.status_code not in (200, 201):
            raise SynapseServiceError(response.status_code, f"Part {part_number} upload failed")

        part_md5 = hashlib.md5(data).hexdigest()
        result = self._json('PUT', f'/file/v1/file/multipart/{upload_id}/add/{part_number}',
                            params={'partMD5Hex': part_md5})
        if result.get('addPartState') != 'ADD_SUCCESS':
            raise SynapseServiceError(500, f"Part {part_number} of upload {upload_id} was not added: "
                                           f"{result.get('errorMessage')}")

    def close(self):
        self._client.close()
