"""
Pipeline exceptions.

Only ConfigurationError is allowed to abort a run. Everything else is
raised inside the per-candidate loop and recorded there.
"""


class NichefeedError(Exception):
    """Base error carrying an optional details dict for the audit log."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(NichefeedError):
    """Missing tracking tag or credential. Fatal for the whole run."""
    pass


class FetchError(NichefeedError):
    """Network error, non-2xx response or a robot-check page."""

    def __init__(self, message: str, url: str | None = None, status: int | None = None, **kwargs):
        super().__init__(message, kwargs)
        self.url = url
        self.status = status


class AIContractError(NichefeedError):
    """AI response could not be reduced to the review JSON schema."""
    pass


class PublishGateError(NichefeedError):
    """A page cannot be published because an attached offer is invalid."""
    pass
