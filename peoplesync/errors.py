"""
Error taxonomy for the upstream integration.

Services raise these; routes and jobs decide how they surface.
"""


class PeopleSyncError(Exception):
    """Base class for all integration errors."""

    code = "error"

    def __init__(self, message: str = "", organization_id: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.organization_id = organization_id


class NotConnected(PeopleSyncError):
    """No upstream credential on file for the organization."""

    code = "not_connected"


class ReconnectRequired(PeopleSyncError):
    """The credential existed but became unusable and has been deleted."""

    code = "reconnect_required"


class SignatureVerificationError(PeopleSyncError):
    """Webhook body does not match its authenticity signature."""

    code = "invalid_signature"


class MissingPrecondition(PeopleSyncError):
    """A campaign lacks something it needs before recipients can be computed."""

    code = "missing_precondition"


class InvalidOwnership(PeopleSyncError):
    """A campaign references a list or category of another organization."""

    code = "invalid_ownership"


class QuotaExceeded(PeopleSyncError):
    """The organization cannot afford the computed recipient count."""

    code = "quota_exceeded"

    def __init__(self, required: int, remaining: int, organization_id: str | None = None):
        super().__init__(
            f"Email limit exceeded. Required: {required}, Remaining: {remaining}",
            organization_id=organization_id,
        )
        self.required = required
        self.remaining = remaining


class UpstreamTransportError(PeopleSyncError):
    """Upstream call failed (network error or non-success status)."""

    code = "upstream_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        organization_id: str | None = None,
    ):
        super().__init__(message, organization_id=organization_id)
        self.status_code = status_code


class PersistenceError(PeopleSyncError):
    """A mirror or credential write failed."""

    code = "persistence_error"


class InsufficientPermission(PeopleSyncError):
    """The upstream user lacks the permission level the integration needs."""

    code = "insufficient_permission"


class AlreadyConnected(PeopleSyncError):
    """The organization already has an upstream connection."""

    code = "already_connected"
