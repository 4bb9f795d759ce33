"""Custom exceptions for GPU DevBox.

Every exception carries a ``code`` that the REST layer uses as the HTTP
status of the error envelope.
"""

from typing import Sequence


class DevBoxError(Exception):
    """Base exception for GPU DevBox errors."""

    code = 500


class ValidationError(DevBoxError):
    """Exception raised when a request is missing or has malformed fields."""

    code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        """
        Initialize ValidationError.

        Args:
            message: Client-facing error message
            field: Name of the offending field, if any
        """
        self.field = field
        super().__init__(message)


class AuthenticationError(DevBoxError):
    """Exception raised when the acting user cannot be identified."""

    code = 401

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class AuthorizationError(DevBoxError):
    """Exception raised when the actor lacks the role or ownership required."""

    code = 403

    def __init__(self, operation: str, reason: str) -> None:
        """
        Initialize AuthorizationError.

        Args:
            operation: Operation that was refused
            reason: Why the actor may not perform it
        """
        self.operation = operation
        self.reason = reason
        super().__init__(f"Forbidden: not authorized to {operation} ({reason})")


class NotFoundError(DevBoxError):
    """Base exception for missing persisted records."""

    code = 404

    def __init__(self, kind: str, identifier: str | int) -> None:
        """
        Initialize NotFoundError.

        Args:
            kind: Kind of record (Container, User, ...)
            identifier: Identifier that was looked up
        """
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ContainerNotFoundError(NotFoundError):
    """Exception raised when a container record is not found."""

    def __init__(self, identifier: str | int) -> None:
        super().__init__("Container", identifier)


class UserNotFoundError(NotFoundError):
    """Exception raised when a user record is not found."""

    def __init__(self, identifier: str | int) -> None:
        super().__init__("User", identifier)


class ConflictError(DevBoxError):
    """Exception raised when a container name is already taken."""

    code = 409

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Container with name '{name}' already exists")


class EngineError(DevBoxError):
    """Exception raised when the container engine process fails."""

    code = 502

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int | None,
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        """
        Initialize EngineError.

        Args:
            command: Engine argument list that failed
            exit_code: Process exit code (None if it never started)
            stderr: Diagnostic output of the engine
            message: Optional override for the error message
        """
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit code {exit_code}"
        super().__init__(message or f"Engine command '{self.verb}' failed: {detail}")

    @property
    def verb(self) -> str:
        """Engine sub-command that failed (run, rm, exec, ...)."""
        return self.command[0] if self.command else "?"

    @property
    def is_not_found(self) -> bool:
        """Whether the engine reported the target container as missing."""
        text = self.stderr.lower()
        return "no such container" in text or "no such object" in text


class EngineTimeoutError(DevBoxError):
    """Exception raised when an engine invocation exceeds its deadline."""

    code = 504

    def __init__(self, command: Sequence[str], timeout_s: float) -> None:
        """
        Initialize EngineTimeoutError.

        Args:
            command: Engine argument list that timed out
            timeout_s: Deadline in seconds
        """
        self.command = list(command)
        self.timeout_s = timeout_s
        verb = self.command[0] if self.command else "?"
        super().__init__(f"Engine command '{verb}' timed out after {timeout_s} seconds")


class ResourceExhaustedError(DevBoxError):
    """Exception raised when the configured port range is saturated."""

    code = 503

    def __init__(self, port_min: int, port_max: int) -> None:
        self.port_min = port_min
        self.port_max = port_max
        super().__init__(f"No free port left in range [{port_min}, {port_max}]")


class PartialFailureError(DevBoxError):
    """Exception raised when only one half of an engine+database operation succeeded."""

    code = 500

    def __init__(
        self,
        operation: str,
        container_name: str,
        engine_done: bool,
        db_done: bool,
        original_error: Exception | None = None,
    ) -> None:
        """
        Initialize PartialFailureError.

        Args:
            operation: Lifecycle operation (create, delete, ...)
            container_name: Container the operation targeted
            engine_done: Whether the engine side completed
            db_done: Whether the database side completed
            original_error: Error that interrupted the operation
        """
        self.operation = operation
        self.container_name = container_name
        self.engine_done = engine_done
        self.db_done = db_done
        self.original_error = original_error
        super().__init__(
            f"{operation} of '{container_name}' partially failed "
            f"(engine {'done' if engine_done else 'not done'}, "
            f"database {'done' if db_done else 'not done'}): {original_error}"
        )
