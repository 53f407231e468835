"""Exception types raised by the RomM client and sync helpers"""

from enum import Enum


class ConnectionErrorKind(str, Enum):
    INVALID_HOSTNAME = 'invalid_hostname'
    CONNECTION_REFUSED = 'connection_refused'
    TIMEOUT = 'timeout'
    WRONG_PROTOCOL = 'wrong_protocol'
    UNAUTHORIZED = 'unauthorized'
    FORBIDDEN = 'forbidden'
    SERVER_ERROR = 'server_error'
    UNCLASSIFIED = 'unclassified'


class RomMError(Exception):
    """Base class for everything this package raises on purpose"""
    pass


class RomMConnectionError(RomMError):
    """A request to RomM failed; ``kind`` says how"""

    def __init__(self, message, kind=ConnectionErrorKind.UNCLASSIFIED, status_code=None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class ProtocolError(RomMConnectionError):
    """The server answers on the other scheme (http vs https)"""

    def __init__(self, requested_protocol, correct_protocol):
        super().__init__(
            f"Server expects {correct_protocol}:// instead of {requested_protocol}://",
            kind=ConnectionErrorKind.WRONG_PROTOCOL,
        )
        self.requested_protocol = requested_protocol
        self.correct_protocol = correct_protocol


class AuthError(RomMConnectionError):
    """HTTP status based failure (401, 403, 5xx)"""
    pass


class DownloadError(RomMError):
    pass


class UnsupportedCFWError(RomMError):
    pass
