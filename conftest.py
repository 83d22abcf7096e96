import socket
import struct
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler

import pytest

from proxy_server import start_server
from socks5_protocol import encode_address


class EchoServer:
    """Local TCP echo server on a background thread."""

    def __init__(self, host='127.0.0.1'):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind((host, 0))
        self.sock.listen(16)
        self.host = host
        self.port = self.sock.getsockname()[1]
        self.accepted = 0
        self._running = True
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        while self._running:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                break
            self.accepted += 1
            threading.Thread(target=self._echo, args=(conn,), daemon=True).start()

    def _echo(self, conn):
        try:
            while True:
                data = conn.recv(4096)
                if not data:
                    break
                conn.sendall(data)
        except OSError:
            pass
        finally:
            conn.close()

    def stop(self):
        self._running = False
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()


class ScriptedUpstream:
    """One-shot upstream SOCKS5 proxy that accepts any credentials and sends a fixed CONNECT reply.

    After the reply it echoes until the proxy side closes, then sets ``peer_closed``.
    """

    def __init__(self, reply):
        self.reply = reply
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(('127.0.0.1', 0))
        self.sock.listen(1)
        self.sock.settimeout(10)
        self.port = self.sock.getsockname()[1]
        self.peer_closed = threading.Event()
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        try:
            conn, _ = self.sock.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(10)
            try:
                _, nmethods = recv_exact(conn, 2)
                recv_exact(conn, nmethods)
                conn.sendall(b'\x05\x02')
                _, ulen = recv_exact(conn, 2)
                recv_exact(conn, ulen)
                recv_exact(conn, recv_exact(conn, 1)[0])
                conn.sendall(b'\x01\x00')

                _, _, _, atyp = recv_exact(conn, 4)
                if atyp == 1:
                    recv_exact(conn, 4)
                elif atyp == 4:
                    recv_exact(conn, 16)
                else:
                    recv_exact(conn, recv_exact(conn, 1)[0])
                recv_exact(conn, 2)
                conn.sendall(self.reply)
            except OSError:
                return
            try:
                while True:
                    data = conn.recv(4096)
                    if not data:
                        break
                    conn.sendall(data)
            except (ConnectionResetError, BrokenPipeError):
                # a close with unread reply bytes arrives as a reset
                pass
            except OSError:
                return
            self.peer_closed.set()

    def stop(self):
        self.sock.close()


def saturated_listener(attempt_timeout=0.3):
    """A listener whose accept queue is full, so further connects hang until they time out.

    Returns (listener, fillers) or None where the platform does not drop SYNs on overflow.
    """
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(('127.0.0.1', 0))
    listener.listen(0)
    fillers = []
    for _ in range(16):
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.settimeout(attempt_timeout)
        try:
            s.connect(listener.getsockname())
        except socket.timeout:
            s.close()
            return listener, fillers
        fillers.append(s)
    for s in fillers:
        s.close()
    listener.close()
    return None


class SimpleHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b'{"ok": true, "path": "%s"}' % self.path.encode('utf-8')
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        # suppress default logging
        return


def recv_exact(sock, n):
    data = b''
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            raise ConnectionError("unexpected EOF")
        data += chunk
    return data


def recv_all(sock):
    data = b''
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk


def read_reply(sock):
    """Read a SOCKS5 reply; returns (rep, (bnd_host, bnd_port))."""
    ver, rep, rsv, atyp = recv_exact(sock, 4)
    assert ver == 5 and rsv == 0
    if atyp == 1:
        host = socket.inet_ntoa(recv_exact(sock, 4))
    elif atyp == 4:
        host = socket.inet_ntop(socket.AF_INET6, recv_exact(sock, 16))
    else:
        host = recv_exact(sock, recv_exact(sock, 1)[0]).decode()
    port = struct.unpack('!H', recv_exact(sock, 2))[0]
    return rep, (host, port)


def open_client(proxy_port, methods=b'\x00'):
    """Connect and send the greeting; returns (sock, chosen_method)."""
    sock = socket.create_connection(('127.0.0.1', proxy_port), timeout=5)
    sock.sendall(bytes([5, len(methods)]) + methods)
    ver, method = recv_exact(sock, 2)
    assert ver == 5
    return sock, method


def send_credentials(sock, user, password):
    u, p = user.encode(), password.encode()
    sock.sendall(bytes([1, len(u)]) + u + bytes([len(p)]) + p)
    return recv_exact(sock, 2)


def send_request(sock, host, port, cmd=1):
    sock.sendall(bytes([5, cmd, 0]) + encode_address(host) + struct.pack('!H', port))
    return read_reply(sock)


def socks5_connect(proxy_port, host, port, user=None, password=None):
    """Full client handshake; returns (sock, rep)."""
    if user is None:
        sock, method = open_client(proxy_port, b'\x00')
        assert method == 0
    else:
        sock, method = open_client(proxy_port, b'\x02')
        assert method == 2
        assert send_credentials(sock, user, password) == b'\x01\x00'
    rep, _ = send_request(sock, host, port)
    return sock, rep


@pytest.fixture
def echo_server():
    server = EchoServer()
    yield server
    server.stop()


@pytest.fixture
def http_server():
    httpd = HTTPServer(('127.0.0.1', 0), SimpleHandler)
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


@pytest.fixture
def blackhole():
    """(host, port) where connects neither succeed nor fail before the timeout."""
    saturated = saturated_listener()
    if saturated is None:
        pytest.skip("listen backlog overflow does not drop connects on this platform")
    listener, fillers = saturated
    yield listener.getsockname()
    for s in fillers:
        s.close()
    listener.close()


@pytest.fixture
def silent_upstream():
    """An upstream proxy port that completes TCP connects but never answers the greeting."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(('127.0.0.1', 0))
    listener.listen(8)
    yield listener.getsockname()[1]
    listener.close()


@pytest.fixture
def refused_port():
    """A port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('127.0.0.1', 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def make_server():
    """Start servers on 127.0.0.1 and close them after the test."""
    handles = []

    def _start(config=None, upstream=None, **kwargs):
        kwargs.setdefault('host', '127.0.0.1')
        kwargs.setdefault('connect_timeout', 3.0)
        kwargs.setdefault('handshake_timeout', 3.0)
        handle = start_server(config, upstream, **kwargs)
        handles.append(handle)
        return handle

    yield _start
    for handle in handles:
        handle.close()
