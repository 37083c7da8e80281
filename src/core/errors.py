"""Exception types raised along the ingestion pipeline."""

from enum import Enum


class PipelineError(Exception):
    """Base class for pipeline failures."""


class NormalizationError(PipelineError):
    """An inbound track request could not be turned into a canonical event."""


class TransportError(PipelineError):
    """Broker or warehouse I/O failed (unreachable, timed out, retries exhausted)."""


class StoreTimeoutError(TransportError):
    """A warehouse statement exceeded the configured request timeout."""


class ProvisioningError(PipelineError):
    """A tenant store could not be prepared."""


class InvalidIdentifierError(ProvisioningError):
    """A tenant-derived identifier is not safe to interpolate into SQL."""


class WriteError(PipelineError):
    """A single event row could not be appended."""


class BackfillError(PipelineError):
    """The device-to-user backfill update failed."""


class RejectionReason(str, Enum):
    NOT_READ_ONLY = "not_read_only"
    FORBIDDEN_KEYWORD = "forbidden_keyword"
    MISSING_TENANT_FILTER = "missing_tenant_filter"
    MULTIPLE_STATEMENTS = "multiple_statements"
    FOREIGN_NAMESPACE = "foreign_namespace"
    SYSTEM_CATALOG = "system_catalog"
    EXTERNAL_ACCESS = "external_access"


class QueryRejectedError(PipelineError):
    """An ad-hoc query failed the guard. The reason is safe to show to clients."""

    def __init__(self, reason: RejectionReason, message: str) -> None:
        self.reason = reason
        self.message = message
        super().__init__(f"{reason.value}: {message}")
