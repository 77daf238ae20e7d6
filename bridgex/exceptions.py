#!/usr/bin/env python3
"""
Exception taxonomy for the Bridge exporter

Handlers raise, the worker manager classifies:
  - RestartExporterError aborts the whole run and asks the caller to retry later
  - NonRetryableError is a permanent data/schema problem for one record or table
  - anything else is treated as retryable through a redrive request
"""

import json
from typing import Optional


class BridgeExporterError(Exception):
    """Base class for errors raised by the exporter itself"""


class NonRetryableError(BridgeExporterError):
    """Permanent error; retrying the same record or table will fail the same way"""


class TsvError(BridgeExporterError):
    """TSV could not be initialized, written or committed"""


class SchemaNotFoundError(BridgeExporterError):
    """The schema for a record could not be resolved"""


class RestartExporterError(Exception):
    """Signals the caller to restart the whole request later"""


class SynapseUnavailableError(Exception):
    """Synapse is not in a writable state; the request should be retried as a whole"""


class ServiceError(Exception):
    """HTTP error returned by a remote service"""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")
        self.status_code = status_code
        self.message = message

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500


class SynapseServiceError(ServiceError):
    """Error returned by the Synapse REST API"""


class BridgeServiceError(ServiceError):
    """Error returned by the Bridge server"""


def _walk_causes(error: Optional[BaseException]):
    seen = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        yield error
        error = error.__cause__


def is_synapse_down(error: Optional[BaseException]) -> bool:
    """True if the error, or anything in its cause chain, is a Synapse 503"""
    for ex in _walk_causes(error):
        if isinstance(ex, SynapseServiceError) and ex.status_code == 503:
            return True
    return False


def is_retryable(error: Optional[BaseException]) -> bool:
    """
    Decide whether a failed record or table is worth redriving.

    Args:
        error: the exception raised by a handler, or None

    Returns:
        bool: False for missing errors, Bridge 4xx responses, malformed JSON and
        NonRetryableError; True for everything else
    """
    if error is None:
        return False
    if isinstance(error, BridgeServiceError) and error.is_client_error:
        return False
    if isinstance(error, json.JSONDecodeError):
        return False
    if isinstance(error, NonRetryableError):
        return False
    return True
