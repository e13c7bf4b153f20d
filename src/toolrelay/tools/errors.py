from __future__ import annotations


class ToolRequestError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ToolConfigError(ToolRequestError):
    """Missing workspace, unknown tool or unresolved server. Never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)


class ToolDeniedError(ToolRequestError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=403)


class ContainmentError(ToolDeniedError):
    pass


class ToolInputError(ToolRequestError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=400)


class ToolProcessError(ToolRequestError):
    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message, retryable=True)
        self.exit_code = exit_code


class ToolTimeoutError(ToolRequestError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=504, retryable=True)


class ToolAbortedError(ToolRequestError):
    pass


RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}


def is_retryable_status(status_code: int | None) -> bool:
    return status_code in RETRYABLE_HTTP_STATUSES


class ToolServerError(ToolRequestError):
    """A tool server answered with a JSON-RPC ``error`` object."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
