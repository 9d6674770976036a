"""
Exception types raised by the dispatch engine.

Caller errors (InvalidChannel, MessageNotFound) surface immediately and are
never retried. ProviderSendError is the transient failure the job pipeline
retries or fails over on.
"""


class NotifyHubError(Exception):
    """Base class for all NotifyHub errors."""
    pass


class InvalidChannel(NotifyHubError):
    """Raised when a send request names an unsupported channel."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Unsupported channel: {channel}")


class NoProviderAvailable(NotifyHubError):
    """Raised when a channel has no provider that can take traffic."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"No provider available for channel: {channel}")


class MessageNotFound(NotifyHubError):
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


class InvalidTransition(NotifyHubError):
    """Raised when a caller explicitly asks for a forbidden status change."""

    def __init__(self, message_id: str, current: str, target: str):
        self.message_id = message_id
        self.current = current
        self.target = target
        super().__init__(f"Message {message_id} cannot move from {current} to {target}")


class ProviderSendError(NotifyHubError):
    """
    An upstream provider rejected or failed a send.

    Carries the provider id, the classified error kind and the measured
    response time so the job pipeline can record and report it.
    """

    def __init__(self, provider: str, error: str, error_kind: str = "unknown", response_time_ms: int = 0):
        self.provider = provider
        self.error = error
        self.error_kind = error_kind
        self.response_time_ms = response_time_ms
        super().__init__(f"{provider}: {error}")


class AllProvidersFailed(NotifyHubError):
    """Every failover candidate for a message failed within one attempt."""

    def __init__(self, channel: str, attempts: list[dict]):
        self.channel = channel
        self.attempts = attempts
        last_error = attempts[-1]["error"] if attempts else "no candidate providers"
        self.error = last_error
        super().__init__(f"All providers failed for {channel}: {last_error}")


class JobTimedOut(NotifyHubError):
    """A dispatch job ran past its time budget."""

    def __init__(self, job: str, timeout_seconds: float):
        self.job = job
        self.timeout_seconds = timeout_seconds
        self.error = f"{job} timed out after {timeout_seconds}s"
        super().__init__(self.error)
