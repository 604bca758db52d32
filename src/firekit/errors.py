from typing import Any, Optional


class FirekitError(Exception):
    pass


class NotInitializedError(FirekitError):
    def __init__(self, message: str = "Firebase not initialized") -> None:
        super().__init__(message)


class ValidationError(FirekitError):
    pass


class UnsupportedActionError(FirekitError):
    def __init__(self, action: Any) -> None:
        super().__init__(f"Invalid action type: {action!r}")
        self.action = action


class BackingStoreError(FirekitError):
    """The backing store rejected an operation.

    The message is the original error's message; ``original`` keeps the
    exception raised by the store so callers can inspect vendor details.
    """

    def __init__(self, operation: str, path: str, original: BaseException) -> None:
        super().__init__(str(original) or original.__class__.__name__)
        self.operation = operation
        self.path = path
        self.original = original


class AuthError(FirekitError):
    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        payload: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.payload = payload


class FirebaseConfigError(FirekitError):
    pass
