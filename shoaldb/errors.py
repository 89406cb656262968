"""Errors raised by the Shoal server and client."""


class ServerError(Exception):
    """Any error encountered while running a Shoal server."""


class ShoalError(ServerError):
    """An error specific to Shoal server logic."""


class NonBinaryMessageError(ShoalError):
    """A message that was not binary was received."""

    def __init__(self, message: str = "received a non binary message") -> None:
        super().__init__(message)


class MapCorruptionError(ShoalError):
    """A map's hash did not match the expected value."""

    def __init__(self, found: int, expected: int) -> None:
        super().__init__(f"map hash was not valid: found {found}, expected {expected}")
        self.found = found
        self.expected = expected


class ClientError(Exception):
    """Any error raised by the Shoal client."""


class WrongTypeError(ClientError):
    """A response was cast to the wrong type."""


class StreamAlreadyTerminatedError(ClientError):
    """A response stream was read after it had already ended."""

    def __init__(self, message: str = "stream already terminated") -> None:
        super().__init__(message)