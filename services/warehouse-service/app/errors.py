from __future__ import annotations


class ServiceError(Exception):
    """Base class for failures surfaced by the availability and pricing logic."""


class ValidationError(ServiceError, ValueError):
    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class NotFoundError(ServiceError):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class UpstreamError(ServiceError):
    """The backing store failed to answer. Callers own any retry policy."""
