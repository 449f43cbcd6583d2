"""Exceptions raised by puppet.

Every failure of a chat exchange surfaces as a :class:`PuppetError`
subclass.  Nothing is retried automatically; callers that want a retry
invoke ``generate()`` again.
"""


class PuppetError(Exception):
    """Base class for all puppet errors."""


class ValidationError(PuppetError):
    """Bad input: configuration, attachment, or unknown function name."""


class TransportError(PuppetError):
    """Non-200 response or socket failure while talking to the provider.

    Args:
        message: Human readable description.
        status: HTTP status code, when a response was received.
        body: Response body text, when it could be read.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body


class DecodeError(PuppetError):
    """The provider stream could not be interpreted."""


class ToolExecutionError(PuppetError):
    """A registered tool implementation raised.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, name: str, call_id: str, message: str):
        super().__init__(
            f"failed to call function, name={name}, id={call_id}, "
            f"error={message}"
        )
        self.name = name
        self.call_id = call_id


class TurnLimitExceeded(PuppetError):
    """The engine reached its configured ``max_turns`` bound."""
