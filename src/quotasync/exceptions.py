"""Quota specific exceptions."""


class QuotaError(Exception):
    """Base exception for quota errors."""


class QuotaTimeoutError(QuotaError, TimeoutError):
    """Exception raised when a store round trip exceeds the caller's timeout.

    A timed-out request leaves the remote counter in an unknown state: the
    script either fully applied or not at all. Callers decide what to do;
    blindly retrying a non-idempotent increment can double count.
    """

    def __init__(self, operation: str, key: str, timeout: float) -> None:
        """Initialize the exception.

        Args:
            operation: Name of the operation that timed out (hit, inc, ...)
            key: Storage key the operation targeted
            timeout: Timeout that expired, in seconds
        """
        self.operation = operation
        self.key = key
        self.timeout = timeout
        super().__init__(f"{operation} on '{key}' timed out after {timeout}s")


class ScriptReplyError(QuotaError):
    """Exception raised when a script or transaction returns an unexpected reply."""

    def __init__(self, script: str, reply: object) -> None:
        """Initialize the exception.

        Args:
            script: Name of the script or transaction
            reply: The reply that was received
        """
        self.script = script
        self.reply = reply
        super().__init__(f"Unexpected reply from {script}: {reply!r}")


class BackendStateError(QuotaError):
    """Exception raised when the bucket backend is used outside its serving states."""

    def __init__(self, state: str) -> None:
        """Initialize the exception.

        Args:
            state: Current backend state name
        """
        self.state = state
        super().__init__(
            f"Bucket backend is {state}. Call await backend.start() before issuing requests."
        )


class RedirectLoopError(QuotaError):
    """Exception raised when a command keeps being redirected between nodes."""

    def __init__(self, command: str, redirects: int) -> None:
        """Initialize the exception.

        Args:
            command: Command name that was redirected
            redirects: Number of redirects followed before giving up
        """
        self.command = command
        self.redirects = redirects
        super().__init__(f"Command {command} redirected {redirects} times, giving up")


class ConfigValidationError(QuotaError):
    """Exception raised when configuration validation fails."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        expected: str | None = None,
        received: str | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            field: Field name that failed validation
            expected: Expected value or type
            received: Received value or type
        """
        self.field = field
        self.expected = expected
        self.received = received

        full_message = message
        if field and expected and received:
            full_message = f"{message} (field='{field}', expected={expected}, received={received})"

        super().__init__(full_message)
