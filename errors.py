class Socks5Error(Exception):
    """Base class for every error raised by the proxy."""


class InvalidConfig(Socks5Error, ValueError):
    """Server configuration has the wrong shape or types."""


class InvalidUpstream(Socks5Error, ValueError):
    """Upstream proxy configuration is incomplete or mistyped."""


class ProtocolError(Socks5Error):
    """Malformed or truncated SOCKS5 frame from the client.

    ``reply_code`` is the SOCKS5 reply to send before closing, or None to
    close without a reply.
    """

    def __init__(self, message, reply_code=None):
        super().__init__(message)
        self.reply_code = reply_code


class AuthRejected(Socks5Error):
    """Client offered no acceptable method or sent bad credentials."""


class ConnectFailed(Socks5Error):
    """Direct connection to the destination failed."""

    def __init__(self, message, reply_code):
        super().__init__(message)
        self.reply_code = reply_code


class UpstreamFailed(ConnectFailed):
    """Chained connection through the upstream proxy failed."""


class RelayError(Socks5Error):
    """Socket error while relaying bytes between the two legs."""
