"""
Error taxonomy for FaceGate.

Every failure raised by the core is a FaceGateError subclass carrying a
stable ``kind``, a human message, whether retrying can help, and the HTTP
status the API layer renders it with.
"""


class FaceGateError(Exception):
    """Base class for all FaceGate errors."""
    kind = "facegate_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.message,
            "retryable": self.retryable
        }


class ValidationError(FaceGateError):
    """Invalid input."""
    kind = "validation_error"
    status_code = 400


class InvalidTarget(ValidationError):
    """Live scan target is not a valid embedding."""
    kind = "invalid_target"


class DimensionMismatch(FaceGateError):
    """Embedding has the wrong length."""
    kind = "dimension_mismatch"
    status_code = 400

    def __init__(self, expected: int, actual: int, message: str = ""):
        self.expected = expected
        self.actual = actual
        super().__init__(message or f"Expected embedding of length {expected}, got {actual}")


class NoFaceDetected(FaceGateError):
    """No face detected in the provided image."""
    kind = "no_face_detected"
    status_code = 422


class MultipleFacesDetected(FaceGateError):
    """More than one face detected in the provided image."""
    kind = "multiple_faces_detected"
    status_code = 422


class Unauthorized(FaceGateError):
    """Missing, invalid or revoked credential."""
    kind = "unauthorized"
    status_code = 401


class Forbidden(FaceGateError):
    """Operation not permitted."""
    kind = "forbidden"
    status_code = 403


class NotFound(FaceGateError):
    """Requested record does not exist."""
    kind = "not_found"
    status_code = 404


class ScanLimitReached(FaceGateError):
    """Maximum number of live scans reached."""
    kind = "scan_limit_reached"
    status_code = 409


class TransientCaptureFailure(FaceGateError):
    """Probe frame could not be acquired this time."""
    kind = "transient_capture_failure"
    status_code = 503
    retryable = True


class CaptureUnavailable(FaceGateError):
    """Capture source is permanently unavailable."""
    kind = "capture_unavailable"
    status_code = 503


class StorageError(FaceGateError):
    """Persistence layer failure."""
    kind = "storage_error"
    status_code = 503
    retryable = True
