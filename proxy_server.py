import socket
import threading
import logging

from errors import AuthRejected, ProtocolError, RelayError
from port_utils import find_free_port
from socks5_auth import AuthNegotiator
from socks5_config import validate
from socks5_protocol import (
    CMD_CONNECT, REP_COMMAND_NOT_SUPPORTED, REP_SUCCEEDED, read_greeting, read_request, send_reply,
)
from upstream import CONNECT_TIMEOUT, make_connector

HANDSHAKE_TIMEOUT = 10.0
# poll interval so the accept loop notices stop() on platforms where shutdown() does not wake accept()
ACCEPT_POLL_INTERVAL = 0.5
# bounded wait for the client's EOF when closing a session
CLOSE_LINGER_TIMEOUT = 1.0
CLOSE_DRAIN_LIMIT = 65536


class Session:
    """Per-connection state; owns the client socket and, once connected, the remote one."""

    def __init__(self, client_socket, addr):
        self.client_socket = client_socket
        self.addr = addr
        self.auth_method = None
        self.dst_addr = None
        self.dst_port = None
        self.remote_socket = None
        self.relay_error = None

    def close(self):
        if self.remote_socket is not None:
            try:
                self.remote_socket.close()
            except OSError:
                pass
        self._close_client()

    def _close_client(self):
        # closing with unread client bytes sends RST, which can discard a reply still in flight;
        # send FIN first and drain what the client already sent
        s = self.client_socket
        try:
            s.shutdown(socket.SHUT_WR)
            s.settimeout(CLOSE_LINGER_TIMEOUT)
            drained = 0
            while drained < CLOSE_DRAIN_LIMIT:
                data = s.recv(4096)
                if not data:
                    break
                drained += len(data)
        except OSError:
            pass
        finally:
            try:
                s.close()
            except OSError:
                pass


class Socks5ProxyServer:
    def __init__(self, local_host='0.0.0.0', local_port=1080, username=None, password=None,
                 upstream=None, logger=None, log_level=None,
                 connect_timeout: float = CONNECT_TIMEOUT, handshake_timeout: float = HANDSHAKE_TIMEOUT):
        self.local_host = local_host
        self.local_port = int(local_port)
        self.username = username
        self.password = password
        self.upstream = upstream
        self.handshake_timeout = handshake_timeout
        self.connector = make_connector(upstream, timeout=connect_timeout)
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.running = False
        self.bound_port = None
        # logger may be a callable for GUI integration; also use stdlib logging
        self.logger = logger
        self._logger = logging.getLogger('ProxyServer')
        if log_level is not None:
            self._logger.setLevel(log_level)
        self._listener_released = threading.Event()
        self._accepting = False
        self._state_lock = threading.Lock()

    @property
    def uses_auth(self):
        return self.username is not None

    def _log(self, message: str, level=logging.INFO):
        try:
            self._logger.log(level, message)
        except Exception:
            pass

        # GUI-style logger callable (if provided)
        if self.logger:
            try:
                self.logger(message)
            except Exception:
                pass

    def bind(self):
        """Bind and listen; raises OSError if the port is unavailable."""
        self.socket.bind((self.local_host, self.local_port))
        self.socket.listen(128)
        self.socket.settimeout(ACCEPT_POLL_INTERVAL)
        self.running = True
        self.bound_port = self.socket.getsockname()[1]
        auth = f"user:{self.username}" if self.uses_auth else "no authentication"
        via = f", upstream {self.upstream.host}:{self.upstream.port}" if self.upstream else ""
        self._log(f"Socks5 server running on {self.local_host}:{self.bound_port}, {auth}{via}")

    def start(self):
        """Accept loop; blocks until stop() is called."""
        if self.bound_port is None:
            self.bind()
        with self._state_lock:
            self._accepting = True
        try:
            while self.running:
                try:
                    client_socket, addr = self.socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if not self.running:
                        # socket was shut down via stop(); exit loop
                        break
                    self._log(f"Accept error: {e}", logging.WARNING)
                    continue

                t = threading.Thread(target=self.handle_client, args=(client_socket, addr),
                                     name=f"socks5-session-{addr[0]}:{addr[1]}", daemon=True)
                t.start()
        finally:
            try:
                self.socket.close()
            except OSError:
                pass
            self._listener_released.set()
            self._log("Socks5 server stopped")

    def stop(self, timeout=None):
        """Stop accepting; in-flight sessions keep relaying until either leg closes.

        Returns True once the listener socket has been released.
        """
        with self._state_lock:
            self.running = False
            accepting = self._accepting
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        if not accepting:
            # no accept loop owns the socket (never bound, or bound but start() not run)
            self.socket.close()
            self._listener_released.set()
        return self._listener_released.wait(timeout)

    def handle_client(self, client_socket, addr):
        """Run one session: greeting, auth, CONNECT, relay."""
        session = Session(client_socket, addr)
        try:
            client_socket.settimeout(self.handshake_timeout)

            offered = read_greeting(client_socket)
            negotiator = AuthNegotiator(self.username, self.password)
            session.auth_method = negotiator.negotiate(client_socket, offered)

            request = read_request(client_socket)
            if request.cmd != CMD_CONNECT:
                self._log(f"{addr[0]}:{addr[1]} unsupported command {request.cmd}")
                send_reply(client_socket, REP_COMMAND_NOT_SUPPORTED)
                return

            session.dst_addr, session.dst_port = request.address, request.port
            result = self.connector.connect(request.address, request.port)
            if not result.ok:
                self._log(f"{addr[0]}:{addr[1]} CONNECT {request.address}:{request.port} denied: {result.error}")
                send_reply(client_socket, result.reply_code)
                return

            session.remote_socket = result.sock
            send_reply(client_socket, REP_SUCCEEDED, result.bind_address)
            self._log(f"{addr[0]}:{addr[1]} CONNECT {request.address}:{request.port}")

            client_socket.settimeout(None)
            result.sock.settimeout(None)
            self.forward_data(session)

        except ProtocolError as e:
            self._log(f"{addr[0]}:{addr[1]} protocol error: {e}", logging.WARNING)
            if e.reply_code is not None:
                try:
                    send_reply(client_socket, e.reply_code)
                except OSError:
                    pass
        except AuthRejected as e:
            self._log(f"{addr[0]}:{addr[1]} auth rejected: {e}", logging.WARNING)
        except OSError as e:
            self._log(f"{addr[0]}:{addr[1]} connection error: {e}", logging.WARNING)
        except Exception:
            self._logger.exception(f"Unexpected error handling client {addr[0]}:{addr[1]}")
        finally:
            session.close()

    def forward_data(self, session):
        """Relay both directions; when either ends, tear down both legs."""
        client, remote = session.client_socket, session.remote_socket

        def teardown():
            for s in (client, remote):
                try:
                    s.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass

        def forward(src, dst):
            try:
                while True:
                    data = src.recv(65536)
                    if not data:
                        break
                    dst.sendall(data)
            except OSError as e:
                # the other direction's teardown also lands here; keep the first error only
                if session.relay_error is None:
                    session.relay_error = RelayError(str(e))
            finally:
                teardown()

        t = threading.Thread(target=forward, args=(remote, client), daemon=True)
        t.start()
        forward(client, remote)
        t.join()

        if session.relay_error is not None:
            self._log(f"{session.addr[0]}:{session.addr[1]} relay ended: {session.relay_error}", logging.DEBUG)


class ServerHandle:
    """A started server: bound port, credentials, and close()."""

    def __init__(self, server, thread):
        self._server = server
        self._thread = thread
        self.closed = threading.Event()

    @property
    def listener(self):
        return self._server.socket

    @property
    def bound_port(self):
        return self._server.bound_port

    @property
    def username(self):
        return self._server.username

    @property
    def password(self):
        return self._server.password

    @property
    def uses_auth(self):
        return self._server.uses_auth

    def as_dict(self):
        return {
            'bound_port': self.bound_port,
            'uses_auth': self.uses_auth,
            'username': self.username,
            'password': self.password,
        }

    def wait(self, timeout=None):
        """Block until the accept loop exits."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def close(self, callback=None, timeout=5.0):
        """Stop accepting new sessions; call ``callback()`` once the listener is released."""
        if not self.closed.is_set():
            self._server.stop(timeout)
            self._thread.join(timeout)
            self.closed.set()
        if callback is not None:
            callback()


def start_server(config=None, upstream=None, host='0.0.0.0', logger=None, log_level=None,
                 connect_timeout=CONNECT_TIMEOUT, handshake_timeout=HANDSHAKE_TIMEOUT):
    """Validate, bind, and start accepting in a background thread.

    Raises InvalidConfig/InvalidUpstream before any socket opens, or OSError
    if the listener cannot bind.
    """
    server_config, upstream_config = validate(config, upstream)
    port = server_config.port or find_free_port(host)

    server = Socks5ProxyServer(local_host=host, local_port=port,
                               username=server_config.username, password=server_config.password,
                               upstream=upstream_config, logger=logger, log_level=log_level,
                               connect_timeout=connect_timeout, handshake_timeout=handshake_timeout)
    try:
        server.bind()
    except OSError:
        server.socket.close()
        raise

    t = threading.Thread(target=server.start, name=f"socks5-accept-{server.bound_port}", daemon=True)
    t.start()
    return ServerHandle(server, t)


if __name__ == '__main__':
    handle = start_server({'port': 1080})
    try:
        handle.wait()
    except KeyboardInterrupt:
        print("\nShutting down proxy server...")
        handle.close()
