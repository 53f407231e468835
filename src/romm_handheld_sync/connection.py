"""Turn transport failures into a small, stable set of error kinds.

Both the quick pre-flight heartbeat check and the full login go through the
same rules:

* DNS failures, refused connections and timeouts are decisive and reported
  as-is.
* Anything else (TLS handshake failures, dropped connections, odd status
  codes) may mean the user typed ``http://`` for an ``https://`` server or
  the other way round, so the same endpoint is retried on the opposite
  scheme. If that probe succeeds the caller gets a ``ProtocolError`` naming
  the scheme that works.
"""

import logging
import socket
from dataclasses import dataclass
from urllib.parse import urlsplit

import requests
from urllib3.exceptions import NameResolutionError

from .constants import LOGIN_TIMEOUT, VALIDATION_TIMEOUT
from .errors import ConnectionErrorKind, ProtocolError, RomMConnectionError

DECISIVE_KINDS = frozenset({
    ConnectionErrorKind.INVALID_HOSTNAME,
    ConnectionErrorKind.CONNECTION_REFUSED,
    ConnectionErrorKind.TIMEOUT,
})

_HOSTNAME_MARKERS = (
    'name or service not known',
    'nodename nor servname',
    'getaddrinfo failed',
    'temporary failure in name resolution',
    'no address associated with hostname',
    'failed to resolve',
)
_REFUSED_MARKERS = ('connection refused', 'actively refused')


def _iter_causes(exc):
    """Walk an exception and everything it wraps (requests -> urllib3 -> socket)"""
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current

        reason = getattr(current, 'reason', None)
        if isinstance(reason, BaseException):
            stack.append(reason)
        stack.append(current.__cause__)
        stack.append(current.__context__)
        stack.extend(arg for arg in current.args if isinstance(arg, BaseException))


def classify_transport_error(exc):
    """Map a ``requests`` exception onto a ConnectionErrorKind"""
    if isinstance(exc, RomMConnectionError):
        return exc.kind

    causes = list(_iter_causes(exc))

    if any(isinstance(e, (requests.exceptions.Timeout, socket.timeout, TimeoutError)) for e in causes):
        return ConnectionErrorKind.TIMEOUT

    if isinstance(exc, (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema)):
        return ConnectionErrorKind.INVALID_HOSTNAME
    if any(isinstance(e, (NameResolutionError, socket.gaierror)) for e in causes):
        return ConnectionErrorKind.INVALID_HOSTNAME

    if any(isinstance(e, ConnectionRefusedError) for e in causes):
        return ConnectionErrorKind.CONNECTION_REFUSED

    text = ' '.join(str(e) for e in causes).lower()
    if any(marker in text for marker in _HOSTNAME_MARKERS):
        return ConnectionErrorKind.INVALID_HOSTNAME
    if any(marker in text for marker in _REFUSED_MARKERS):
        return ConnectionErrorKind.CONNECTION_REFUSED

    return ConnectionErrorKind.UNCLASSIFIED


def switch_protocol(base_url):
    if base_url.startswith('https://'):
        return 'http://' + base_url[len('https://'):]
    if base_url.startswith('http://'):
        return 'https://' + base_url[len('http://'):]
    return base_url


def scheme_of(url):
    return urlsplit(url).scheme


def probe_other_protocol(session, base_url, path, timeout, method='GET', accept=None, **kwargs):
    """Retry ``path`` on the opposite scheme.

    Returns the scheme that worked, or None. ``accept`` decides whether the
    probe's status code counts as working; the default is any 2xx.
    """
    switched = switch_protocol(base_url)
    if switched == base_url:
        return None

    accept = accept or (lambda status: 200 <= status < 300)
    try:
        response = session.request(method, switched + path, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        logging.debug(f"Protocol probe to {switched} failed: {e}")
        return None

    try:
        if accept(response.status_code):
            logging.debug(f"Protocol probe to {switched} succeeded with HTTP {response.status_code}")
            return scheme_of(switched)
        return None
    finally:
        response.close()


STARTUP_ERROR_KEYS = {
    ConnectionErrorKind.INVALID_HOSTNAME: 'startup_error_invalid_hostname',
    ConnectionErrorKind.CONNECTION_REFUSED: 'startup_error_connection_refused',
    ConnectionErrorKind.TIMEOUT: 'startup_error_timeout',
    ConnectionErrorKind.WRONG_PROTOCOL: 'startup_error_wrong_protocol',
    ConnectionErrorKind.UNAUTHORIZED: 'startup_error_credentials',
    ConnectionErrorKind.FORBIDDEN: 'startup_error_forbidden',
    ConnectionErrorKind.SERVER_ERROR: 'startup_error_server',
}

LOGIN_ERROR_TYPES = {
    ConnectionErrorKind.INVALID_HOSTNAME: 'dns',
    ConnectionErrorKind.CONNECTION_REFUSED: 'connection',
    ConnectionErrorKind.TIMEOUT: 'timeout',
    ConnectionErrorKind.WRONG_PROTOCOL: 'protocol',
    ConnectionErrorKind.UNAUTHORIZED: 'credentials',
    ConnectionErrorKind.FORBIDDEN: 'forbidden',
    ConnectionErrorKind.SERVER_ERROR: 'server',
}


def error_kind(err):
    if isinstance(err, RomMConnectionError):
        return err.kind
    if isinstance(err, requests.RequestException):
        return classify_transport_error(err)
    return ConnectionErrorKind.UNCLASSIFIED


def classify_connection_error(err):
    """Message key describing why startup could not reach the server ('' for success)"""
    if err is None:
        return ''
    if isinstance(err, ProtocolError):
        return 'startup_error_use_https' if err.correct_protocol == 'https' else 'startup_error_use_http'
    return STARTUP_ERROR_KEYS.get(error_kind(err), 'error_loading_platforms')


@dataclass
class LoginAttemptResult:
    success: bool = False
    error_type: str = ''
    error_msg: str = ''


def classify_login_error(err):
    if err is None:
        return LoginAttemptResult(success=True)

    if isinstance(err, ProtocolError):
        message = 'login_error_use_https' if err.correct_protocol == 'https' else 'login_error_use_http'
        return LoginAttemptResult(error_type='protocol', error_msg=message)

    kind = error_kind(err)
    if kind in LOGIN_ERROR_TYPES:
        return LoginAttemptResult(error_type=LOGIN_ERROR_TYPES[kind], error_msg=f"login_error_{STARTUP_ERROR_KEYS[kind][len('startup_error_'):]}")

    logging.warning(f"Unclassified login error: {err}")
    return LoginAttemptResult(error_type='unknown', error_msg='login_error_unexpected')


def validate_connection(host):
    """Quick heartbeat check with a short timeout; returns a message key or ''"""
    from .romm_client import get_romm_client

    client = get_romm_client(host, VALIDATION_TIMEOUT, retries=0)
    try:
        client.validate_connection()
    except RomMConnectionError as e:
        logging.error(f"Failed to connect to RomM: {e}")
        return classify_connection_error(e)
    return ''


def attempt_login(host):
    """Validate with a short timeout, then log in with the longer one"""
    from .romm_client import get_romm_client

    validation_client = get_romm_client(host, VALIDATION_TIMEOUT, retries=0)
    try:
        validation_client.validate_connection()
    except RomMConnectionError as e:
        return classify_login_error(e)

    login_client = get_romm_client(host, LOGIN_TIMEOUT)
    try:
        login_client.login(host.username, host.password)
    except RomMConnectionError as e:
        return classify_login_error(e)

    return LoginAttemptResult(success=True)
