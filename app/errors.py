"""
Error taxonomy for the verification workflow.

Every error carries the HTTP status the API layer answers with and a
machine-readable code the frontend uses to explain the failure.
"""


class ServiceError(Exception):
    status_code = 500
    code = "service_error"

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


# ---------- validation ----------

class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(ServiceError):
    status_code = 403
    code = "forbidden"


# ---------- external services ----------

class ExternalServiceError(ServiceError):
    status_code = 502
    code = "external_service_error"


class StorageError(ExternalServiceError):
    code = "storage_error"


class AIServiceError(ExternalServiceError):
    code = "ai_service_error"


class AIServiceTimeout(AIServiceError):
    code = "ai_service_timeout"


class IssuerError(ExternalServiceError):
    code = "issuer_error"


# ---------- state conflicts ----------

class StateConflictError(ServiceError):
    status_code = 409
    code = "state_conflict"


class InvalidAppealState(StateConflictError):
    code = "invalid_appeal_state"


class DuplicateAppeal(StateConflictError):
    code = "duplicate_appeal"


class StaleRecordError(StateConflictError):
    code = "stale_record"


class InvalidTransition(StateConflictError):
    code = "invalid_transition"


class CertificateAlreadyIssued(StateConflictError):
    code = "certificate_already_issued"


# ---------- persistence ----------

class FatalPersistenceError(ServiceError):
    status_code = 503
    code = "persistence_unavailable"
