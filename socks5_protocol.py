"""SOCKS5 wire format (RFC 1928, RFC 1929) over blocking sockets.

Readers raise ``ProtocolError`` for malformed or truncated frames; the caller
decides whether to reply before closing (see ``ProtocolError.reply_code``).
"""
import ipaddress
import socket
import struct

from errors import ProtocolError

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01

METHOD_NO_AUTH = 0x00
METHOD_USERPASS = 0x02
METHOD_NO_ACCEPTABLE = 0xFF

CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

REP_SUCCEEDED = 0x00
REP_GENERAL_FAILURE = 0x01
REP_NOT_ALLOWED = 0x02
REP_NETWORK_UNREACHABLE = 0x03
REP_HOST_UNREACHABLE = 0x04
REP_CONNECTION_REFUSED = 0x05
REP_TTL_EXPIRED = 0x06
REP_COMMAND_NOT_SUPPORTED = 0x07
REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

AUTH_SUCCESS = 0x00
AUTH_FAILURE = 0x01


def recv_exact(sock, n):
    """Read exactly n bytes; EOF before that is a truncated frame."""
    data = b''
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            raise ProtocolError("socket closed during recv_exact")
        data += chunk
    return data


class Socks5Request:
    """Parsed ``[ver][cmd][rsv][atyp][dst.addr][dst.port]`` request."""

    def __init__(self, cmd, atyp, address, port):
        self.cmd = cmd
        self.atyp = atyp
        self.address = address
        self.port = port

    def __repr__(self):
        return f"Socks5Request(cmd={self.cmd}, address={self.address!r}, port={self.port})"


def read_greeting(sock):
    """Read ``[ver][nmethods][methods...]`` and return the offered methods."""
    ver, nmethods = recv_exact(sock, 2)
    if ver != SOCKS_VERSION:
        raise ProtocolError(f"Unsupported SOCKS version {ver}")
    if nmethods == 0:
        return b''
    return recv_exact(sock, nmethods)


def send_method_selection(sock, method):
    sock.sendall(struct.pack('!BB', SOCKS_VERSION, method))


def read_credentials(sock):
    """Read the username/password sub-negotiation, returning raw bytes."""
    ver, ulen = recv_exact(sock, 2)
    if ver != AUTH_VERSION:
        raise ProtocolError(f"Unsupported auth sub-negotiation version {ver}")
    uname = recv_exact(sock, ulen) if ulen else b''
    plen = recv_exact(sock, 1)[0]
    passwd = recv_exact(sock, plen) if plen else b''
    return uname, passwd


def send_auth_status(sock, status):
    sock.sendall(struct.pack('!BB', AUTH_VERSION, status))


def _read_address(sock, atyp):
    if atyp == ATYP_IPV4:
        return socket.inet_ntop(socket.AF_INET, recv_exact(sock, 4))
    if atyp == ATYP_IPV6:
        return socket.inet_ntop(socket.AF_INET6, recv_exact(sock, 16))
    if atyp == ATYP_DOMAIN:
        length = recv_exact(sock, 1)[0]
        if length == 0:
            raise ProtocolError("Empty domain name")
        raw = recv_exact(sock, length)
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Undecodable domain name: {e}") from e
    raise ProtocolError(f"Unsupported address type {atyp}",
                        reply_code=REP_ADDRESS_TYPE_NOT_SUPPORTED)


def read_request(sock):
    """Read a full request frame. Any command is parsed; the caller rejects non-CONNECT."""
    ver, cmd, rsv, atyp = recv_exact(sock, 4)
    if ver != SOCKS_VERSION:
        raise ProtocolError(f"Unsupported SOCKS version {ver} in request")
    if rsv != 0x00:
        raise ProtocolError("Reserved byte must be zero")
    address = _read_address(sock, atyp)
    port = struct.unpack('!H', recv_exact(sock, 2))[0]
    return Socks5Request(cmd, atyp, address, port)


def encode_address(host):
    """Encode a host as ``[atyp][addr]``: IP literals as IPv4/IPv6, anything else as a domain.

    A ``bytes`` host is taken as an already-encoded domain name; ip_address()
    would read a 4- or 16-byte value as a packed address.
    """
    try:
        if isinstance(host, bytes):
            raise ValueError(host)
        ip = ipaddress.ip_address(host)
    except ValueError:
        raw = host if isinstance(host, bytes) else host.encode('idna')
        if not 0 < len(raw) <= 255:
            raise ValueError(f"Domain name length out of range: {host!r}")
        return struct.pack('!BB', ATYP_DOMAIN, len(raw)) + raw
    if ip.version == 4:
        return struct.pack('!B', ATYP_IPV4) + ip.packed
    return struct.pack('!B', ATYP_IPV6) + ip.packed


def build_reply(rep, bind_address=None):
    """Build ``[ver][rep][rsv][atyp][bnd.addr][bnd.port]``.

    Without a bind address the reply carries 0.0.0.0:0.
    """
    if bind_address is None:
        bind_address = ('0.0.0.0', 0)
    host, port = bind_address[0], bind_address[1]
    # IPv6 sockname may carry a scope suffix
    if isinstance(host, str) and '%' in host:
        host = host.split('%', 1)[0]
    return struct.pack('!BBB', SOCKS_VERSION, rep, 0x00) + encode_address(host) + struct.pack('!H', port)


def send_reply(sock, rep, bind_address=None):
    sock.sendall(build_reply(rep, bind_address))
