"""Public models for the retrieval service."""

from src.models.requests import (
    AddProxyRequest,
    CreateSearchJobRequest,
    ExportFormat,
    JobStatus,
    ProxyKind,
    ProxyStatus,
    SearchCriteria,
    SearchJobState,
)
from src.models.responses import ApiResponse, serialize_job
from src.models.schemas import EXPORT_HEADERS, LINKEDIN_SEARCH, VOYAGER_API, Lead

__all__ = [
    "AddProxyRequest",
    "ApiResponse",
    "CreateSearchJobRequest",
    "EXPORT_HEADERS",
    "ExportFormat",
    "JobStatus",
    "LINKEDIN_SEARCH",
    "Lead",
    "ProxyKind",
    "ProxyStatus",
    "SearchCriteria",
    "SearchJobState",
    "VOYAGER_API",
    "serialize_job",
]
