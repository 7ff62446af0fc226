"""Error taxonomy shared by the stores and the HTTP layer."""


class ConnectError(Exception):
    """Base class for expected, user-facing failures."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ConnectError):
    """Malformed input: lengths, ranges, unknown enum values."""

    status_code = 422


class AuthorizationError(ConnectError):
    """Actor may not see the row.

    Reported as "not found" so the existence of the row is not confirmed
    to an unauthorized actor.
    """

    status_code = 404

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class PermissionDenied(ConnectError):
    """Actor's role does not allow the operation at all."""

    status_code = 403


class NoRecipientError(ConnectError):
    """Message sent before any admin is assigned to the complaint."""

    status_code = 409

    def __init__(self, message: str = "No recipient assigned yet"):
        super().__init__(message)


class ConflictError(ConnectError):
    """Write rejected because the row changed since it was read."""

    status_code = 409


class DuplicateFeedbackError(ConflictError):
    """Feedback was already submitted for this complaint."""

    def __init__(self, complaint_id: str):
        super().__init__(f"Feedback already submitted for complaint {complaint_id}")
        self.complaint_id = complaint_id


class TransientStoreError(ConnectError):
    """Backend failure; the operation left no partial state and may be retried."""

    status_code = 503
