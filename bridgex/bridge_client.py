"""
Bridge server client.

Fetches upload schemas for the schema registry. Authentication uses a worker
API token passed as a Bearer header.
"""

from typing import Optional

import httpx

from bridgex.enhanced_logger import logger
from bridgex.exceptions import BridgeServiceError, SchemaNotFoundError
from bridgex.schema import SchemaKey, UploadSchema


class BridgeClient:

    def __init__(self, endpoint: str, api_token: str, http_client: Optional[httpx.Client] = None):
        self._base_url = endpoint.rstrip('/')
        self._client = http_client or httpx.Client(timeout=30.0)
        self._headers = {'Authorization': f"Bearer {api_token}"} if api_token else {}

    def get_schema(self, key: SchemaKey) -> UploadSchema:
        """
        Fetch one schema revision.

        Raises:
            SchemaNotFoundError: if Bridge has no such schema
            BridgeServiceError: for any other non-200 response
        """
        url = (f"{self._base_url}/v3/studies/{key.study_id}/uploadschemas/{key.schema_id}"
               f"/revisions/{key.revision}")
        response = self._client.get(url, headers=self._headers)

        if response.status_code == 404:
            raise SchemaNotFoundError(f"Schema not found: {key}")
        if response.status_code != 200:
            raise BridgeServiceError(response.status_code, response.text[:500])

        data = response.json()
        data.setdefault('studyId', key.study_id)
        schema = UploadSchema.from_dict(data)
        logger.debug(f"Fetched schema {key} with {len(schema.field_definitions)} fields")
        return schema

    def close(self):
        self._client.close()
