from __future__ import annotations


class SweetlinkError(Exception):
    pass


class BindFailure(SweetlinkError):
    """No port in the configured range could be bound."""

    def __init__(self, message: str, *, first_port: int, last_port: int, attempts: int) -> None:
        super().__init__(message)
        self.first_port = first_port
        self.last_port = last_port
        self.attempts = attempts


class HandshakeMismatch(SweetlinkError):
    """The server on the other end belongs to a different application."""

    def __init__(self, server_app_port: int | None, expected_app_port: int | None) -> None:
        super().__init__(
            f"Server is for app port {server_app_port}, but this runtime is on port {expected_app_port}"
        )
        self.server_app_port = server_app_port
        self.expected_app_port = expected_app_port


class RequestTimeout(SweetlinkError):
    pass


class HandlerFailure(SweetlinkError):
    pass


class MalformedMessage(SweetlinkError):
    pass
