"""Custom exceptions for CrateFlow."""


class CrateFlowError(Exception):
    """Base exception for CrateFlow errors."""

    pass


class EngineError(CrateFlowError):
    """Base exception for container engine failures."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        """
        Initialize EngineError.

        Args:
            message: Error message
            original_error: Original exception raised by the engine SDK
        """
        self.original_error = original_error
        super().__init__(message)


class EngineUnavailableError(EngineError):
    """Exception raised when the container engine cannot be reached."""

    def __init__(
        self,
        message: str = "Container engine is unavailable",
        original_error: Exception | None = None,
    ) -> None:
        """
        Initialize EngineUnavailableError.

        Args:
            message: Error message
            original_error: Original exception raised by the engine SDK
        """
        super().__init__(message, original_error)


class ObjectNotFoundError(EngineError):
    """Exception raised when the engine has no object for a reference."""

    def __init__(self, ref: str, original_error: Exception | None = None) -> None:
        """
        Initialize ObjectNotFoundError.

        Args:
            ref: Engine reference that was not found
            original_error: Original exception raised by the engine SDK
        """
        self.ref = ref
        super().__init__(f"Engine object not found: {ref}", original_error)


class AlreadyInStateError(EngineError):
    """Exception raised when an engine object is already in the requested state."""

    def __init__(self, ref: str, state: str, original_error: Exception | None = None) -> None:
        """
        Initialize AlreadyInStateError.

        Args:
            ref: Engine reference
            state: State the object is already in
            original_error: Original exception raised by the engine SDK
        """
        self.ref = ref
        self.state = state
        super().__init__(f"Engine object {ref} is already {state}", original_error)


class EngineTimeoutError(EngineError):
    """Exception raised when an engine call exceeds its deadline."""

    def __init__(
        self,
        operation: str,
        ref: str | None,
        timeout_s: float,
        original_error: Exception | None = None,
    ) -> None:
        """
        Initialize EngineTimeoutError.

        Args:
            operation: Engine operation that timed out
            ref: Engine reference the operation targeted, if any
            timeout_s: Deadline in seconds
            original_error: Original exception raised by the engine SDK
        """
        self.operation = operation
        self.ref = ref
        self.timeout_s = timeout_s
        target = f" on {ref}" if ref else ""
        super().__init__(
            f"Engine {operation}{target} timed out after {timeout_s} seconds", original_error
        )


class EngineFaultError(EngineError):
    """Exception raised for any other engine-side failure."""

    def __init__(self, detail: str, original_error: Exception | None = None) -> None:
        """
        Initialize EngineFaultError.

        Args:
            detail: Failure detail reported by the engine
            original_error: Original exception raised by the engine SDK
        """
        self.detail = detail
        super().__init__(f"Engine fault: {detail}", original_error)


class ContainerError(CrateFlowError):
    """Base exception for container registry errors."""

    pass


class ContainerNotFoundError(ContainerError):
    """Exception raised when a container is not in the registry."""

    def __init__(self, identifier: str) -> None:
        """
        Initialize ContainerNotFoundError.

        Args:
            identifier: Container ID or name that was not found
        """
        self.identifier = identifier
        super().__init__(f"Container not found: {identifier}")


class ContainerAlreadyExistsError(ContainerError):
    """Exception raised when a container with the same name already exists."""

    def __init__(self, name: str) -> None:
        """
        Initialize ContainerAlreadyExistsError.

        Args:
            name: Name that already exists
        """
        self.name = name
        super().__init__(f"Container with name '{name}' already exists")


class NoEngineObjectError(ContainerError):
    """Exception raised when a record has no engine object bound yet."""

    def __init__(self, container_id: str) -> None:
        """
        Initialize NoEngineObjectError.

        Args:
            container_id: Container ID without an engine reference
        """
        self.container_id = container_id
        super().__init__(f"Container {container_id} has no engine object")


class InvalidLogTargetError(CrateFlowError):
    """Exception raised for an unknown log category or an unsafe container id."""

    def __init__(self, value: str, reason: str) -> None:
        """
        Initialize InvalidLogTargetError.

        Args:
            value: Rejected category or container id
            reason: Why it was rejected
        """
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid log target '{value}': {reason}")


class ChannelError(CrateFlowError):
    """Base exception for real-time channel request failures."""

    code = "channel_error"


class AuthRequiredError(ChannelError):
    """Exception raised when a request arrives before authentication."""

    code = "auth_required"

    def __init__(self) -> None:
        """Initialize AuthRequiredError."""
        super().__init__("Authentication required")


class AuthFailedError(ChannelError):
    """Exception raised when a token cannot be verified."""

    code = "auth_failed"

    def __init__(self, reason: str = "Invalid or expired token") -> None:
        """
        Initialize AuthFailedError.

        Args:
            reason: Why verification failed
        """
        self.reason = reason
        super().__init__(reason)


class UnauthorizedError(ChannelError):
    """Exception raised when a caller may not access a container."""

    code = "unauthorized"

    def __init__(self, container_id: str) -> None:
        """
        Initialize UnauthorizedError.

        Args:
            container_id: Container the caller tried to access
        """
        self.container_id = container_id
        super().__init__(f"Access denied to container {container_id}")


class InvalidMessageError(ChannelError):
    """Exception raised for malformed or unknown channel messages."""

    code = "invalid_message"

    def __init__(self, detail: str) -> None:
        """
        Initialize InvalidMessageError.

        Args:
            detail: What was wrong with the message
        """
        self.detail = detail
        super().__init__(f"Invalid message: {detail}")
