from __future__ import annotations


class FleetError(Exception):
    """Base for every error the API reports as ``{"kind", "message"}``."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(FleetError):
    kind = "validation"
    status_code = 400


class DuplicateSubdomainError(FleetError):
    kind = "duplicate_subdomain"
    status_code = 409


class WorkloadNotFoundError(FleetError):
    kind = "workload_not_found"
    status_code = 404


class NotRunningError(FleetError):
    kind = "not_running"
    status_code = 409


class CommandDeliveryError(FleetError):
    kind = "command_delivery"
    status_code = 409


class ConfigGenerationError(FleetError):
    kind = "config_generation"
    status_code = 500


class StoreIOError(FleetError):
    kind = "store_io"
    status_code = 500


# Runtime driver errors


class RuntimeUnavailable(FleetError):
    kind = "runtime_unavailable"
    status_code = 503


class WorkloadNotFound(FleetError):
    """The descriptor exists but Docker has no container for it."""

    kind = "container_not_found"
    status_code = 404


class OperationTimedOut(FleetError):
    kind = "timeout"
    status_code = 504


# Background jobs


class JobBusyError(FleetError):
    kind = "busy"
    status_code = 409


class JobNotFoundError(FleetError):
    kind = "job_not_found"
    status_code = 404
