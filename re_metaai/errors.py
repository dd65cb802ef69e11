from typing import Optional


class MetaAIError(Exception):
    """Base class for every error raised by the client."""


class SessionAcquisitionFailure(MetaAIError):
    def __init__(self, reason: str, server_response: Optional[str] = None):
        self.reason = reason
        self.server_response = server_response or ""
        message = f"Unable to acquire a session: {reason}"
        if self.server_response:
            message += f"\nServer response: {self.server_response[:500]}"
        super().__init__(message)


class TokenNegotiationFailure(MetaAIError):
    def __init__(self, reason: str, server_response: Optional[str] = None):
        self.reason = reason
        self.server_response = server_response or ""
        message = (
            f"Unable to negotiate an access token: {reason}. "
            "Check region blocking or network."
        )
        if self.server_response:
            message += f"\nServer response: {self.server_response[:500]}"
        super().__init__(message)


class TransportError(MetaAIError):
    """The streaming connection failed to produce a response."""


class TransportTimeout(TransportError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"No response received within {timeout:g}s")


class TransportClosedWithoutResponse(TransportError):
    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason
        message = "Connection closed without a response"
        if code is not None:
            message += f" (code={code}{', ' + reason if reason else ''})"
        super().__init__(message)


class RetryError(MetaAIError):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Unable to obtain a valid response after {attempts} attempt(s)."
        if last_error is not None:
            message += f" Last error: {last_error}"
        super().__init__(message)


class MessageTooLong(MetaAIError, ValueError):
    """The encoded message does not fit in a single gateway frame."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Message too long: encodes to {size} bytes, a turn can carry at most {limit}"
        )


class MalformedPayload(ValueError):
    def __init__(self, offset: int, detail: str):
        self.offset = offset
        super().__init__(f"Malformed payload at byte {offset}: {detail}")
