import errno
import logging
import socket

from errors import ConnectFailed, UpstreamFailed
from socks5_protocol import (
    REP_CONNECTION_REFUSED, REP_GENERAL_FAILURE, REP_HOST_UNREACHABLE, REP_NETWORK_UNREACHABLE,
)

# optional dependency: PySocks (pip install pysocks), needed for upstream chaining only
try:
    import socks
    HAS_PYSOCKS = True
except ImportError:
    socks = None
    HAS_PYSOCKS = False

CONNECT_TIMEOUT = 10.0

_logger = logging.getLogger('ProxyServer')


class ConnectResult:
    """Outcome of a connect attempt: an open socket or the error to report."""

    def __init__(self, sock=None, bind_address=None, error=None):
        self.sock = sock
        self.bind_address = bind_address
        self.error = error

    @property
    def ok(self):
        return self.sock is not None

    @property
    def reply_code(self):
        return self.error.reply_code if self.error is not None else 0x00


def reply_code_for_error(exc):
    """Map a connect error onto the closest SOCKS5 reply code."""
    if isinstance(exc, ConnectionRefusedError):
        return REP_CONNECTION_REFUSED
    if isinstance(exc, (socket.timeout, TimeoutError, socket.gaierror)):
        return REP_HOST_UNREACHABLE
    if exc.errno == errno.EHOSTUNREACH:
        return REP_HOST_UNREACHABLE
    if exc.errno == errno.ENETUNREACH:
        return REP_NETWORK_UNREACHABLE
    return REP_GENERAL_FAILURE


class DirectConnector:
    """Open a plain TCP connection to the destination."""

    def __init__(self, timeout=CONNECT_TIMEOUT):
        self.timeout = timeout

    def connect(self, host, port):
        try:
            s = socket.create_connection((host, port), timeout=self.timeout)
        except OSError as e:
            _logger.info(f"Direct connect failed to {host}:{port}: {e}")
            return ConnectResult(error=ConnectFailed(f"{host}:{port}: {e}", reply_code_for_error(e)))
        _logger.debug(f"Direct connect success to {host}:{port}")
        return ConnectResult(sock=s, bind_address=s.getsockname()[:2])


def _upstream_reply_code(exc):
    # PySocks formats SOCKS5Error as "0x05: Connection refused"
    if isinstance(exc, socks.SOCKS5Error):
        try:
            return int(exc.msg.split(':', 1)[0], 16)
        except (AttributeError, ValueError):
            pass
    # PySocks wraps socket errors; a connect_timeout expiry is reported like a direct one
    cause = getattr(exc, 'socket_err', exc)
    if isinstance(cause, (socket.timeout, TimeoutError)):
        return REP_HOST_UNREACHABLE
    return REP_GENERAL_FAILURE


def _bound_address(sockname):
    """Normalize the upstream-reported bound address for our own reply."""
    if not sockname:
        return None
    host, port = sockname[0], sockname[1]
    # PySocks returns domain-type (ATYP 0x03) addresses as raw bytes
    if isinstance(host, bytes):
        try:
            host = host.decode('idna')
        except UnicodeError:
            return None
    return host, port


class ChainedConnector:
    """Tunnel to the destination through an upstream SOCKS5 proxy with username/password."""

    def __init__(self, upstream, timeout=CONNECT_TIMEOUT):
        self.upstream = upstream
        self.timeout = timeout

    def connect(self, host, port):
        up = self.upstream
        s = socks.socksocket()
        s.set_proxy(socks.SOCKS5, up.host, up.port, rdns=True,
                    username=up.username, password=up.password)
        s.settimeout(self.timeout)
        try:
            s.connect((host, port))
        except (socks.ProxyError, OSError) as e:
            s.close()
            _logger.info(f"Upstream {up.host}:{up.port} failed for {host}:{port}: {e}")
            return ConnectResult(error=UpstreamFailed(f"{host}:{port} via {up.host}:{up.port}: {e}",
                                                      _upstream_reply_code(e)))
        _logger.debug(f"Upstream tunnel to {host}:{port} via {up.host}:{up.port} established")
        return ConnectResult(sock=s, bind_address=_bound_address(s.get_proxy_sockname()))


def make_connector(upstream=None, timeout=CONNECT_TIMEOUT):
    """Pick the connect strategy once, from whether an upstream is configured."""
    if upstream is None:
        return DirectConnector(timeout=timeout)
    return ChainedConnector(upstream, timeout=timeout)
