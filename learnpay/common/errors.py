"""Error taxonomy shared by the reconciliation and enrollment services.

Services raise these; the HTTP layer maps them to responses using
`status_code` and `code`.
"""


class LearnPayError(Exception):
    """Base exception for service layer errors."""

    status_code = 400
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidAmount(LearnPayError):
    code = "invalid_amount"


class AmountExceedsDue(LearnPayError):
    code = "amount_exceeds_due"


class NothingDue(LearnPayError):
    code = "nothing_due"


class InvalidChannel(LearnPayError):
    code = "invalid_channel"


class FreeCourse(LearnPayError):
    code = "free_course"


class SignatureInvalid(LearnPayError):
    code = "signature_invalid"


class NotFound(LearnPayError):
    status_code = 404
    code = "not_found"


class IntentNotFound(NotFound):
    code = "intent_not_found"


class StaleIntent(LearnPayError):
    status_code = 409
    code = "stale_intent"


class IntentFailed(LearnPayError):
    status_code = 409
    code = "intent_failed"


class AlreadyEnrolled(LearnPayError):
    status_code = 409
    code = "already_enrolled"


class ConcurrentUpdate(LearnPayError):
    status_code = 409
    code = "concurrent_update"


class SelfEnrollmentForbidden(LearnPayError):
    status_code = 403
    code = "self_enrollment_forbidden"


class RoleForbidden(LearnPayError):
    status_code = 403
    code = "role_forbidden"


class NotOwner(LearnPayError):
    status_code = 403
    code = "not_owner"


class GatewayUnavailable(LearnPayError):
    status_code = 503
    code = "gateway_unavailable"


class MalformedEvent(LearnPayError):
    code = "malformed_event"
