class TriageError(Exception):
    """Base class for all lead triage errors.

    ``detail`` is short and safe to show to an operator; it never carries
    stack traces or internal identifiers beyond the action/lead id.
    """

    def __init__(self, detail: str = "Something went wrong"):
        self.detail = detail
        super().__init__(detail)

    def operator_message(self) -> str:
        return self.detail


class TransientUpstreamError(TriageError):
    """Raised when the CRM, Slack or the scorer fails with a retryable error."""

    def __init__(self, detail: str = "Upstream service is temporarily unavailable"):
        super().__init__(detail)


class MalformedResponseError(TriageError):
    """Raised when the risk scorer returns something that cannot be parsed."""

    def __init__(self, detail: str = "Scorer returned a malformed response"):
        super().__init__(detail)


class InvalidStateError(TriageError):
    """Raised when a pending action is no longer in a state that allows the operation."""

    def __init__(self, detail: str = "Action has already been processed"):
        super().__init__(detail)


class NotFoundError(TriageError):
    """Raised when an action or lead does not exist."""

    def __init__(self, detail: str = "Not found"):
        super().__init__(detail)


class ActionFailedError(TriageError):
    """Raised when an approved action was claimed but the CRM call behind it failed."""

    def __init__(self, detail: str = "The CRM rejected the action"):
        super().__init__(detail)


class UnknownActionTypeError(TriageError):
    """Raised when a stored action carries a type outside ``ActionType``."""

    def __init__(self, detail: str = "Unknown action type"):
        super().__init__(detail)


class ConfigurationMissingError(TriageError):
    """Raised when a required setting (e.g. the operator channel) is not configured."""

    def __init__(self, detail: str = "Required configuration is missing"):
        super().__init__(detail)
