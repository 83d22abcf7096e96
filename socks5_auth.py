import hmac
import logging

from errors import AuthRejected
from socks5_protocol import (
    AUTH_FAILURE, AUTH_SUCCESS, METHOD_NO_ACCEPTABLE, METHOD_NO_AUTH, METHOD_USERPASS,
    read_credentials, send_auth_status, send_method_selection,
)

AWAITING_METHOD_SELECTION = 'awaiting_method_selection'
METHOD_CHOSEN = 'method_chosen'
AWAITING_CREDENTIALS = 'awaiting_credentials'
AUTHENTICATED = 'authenticated'
CLOSED = 'closed'

_logger = logging.getLogger('ProxyServer')


class AuthNegotiator:
    """Server side of SOCKS5 method selection for one connection.

    With credentials configured only username/password (0x02) is acceptable,
    otherwise only "no authentication" (0x00). A failed attempt ends in
    ``CLOSED``; there are no retries.
    """

    def __init__(self, username=None, password=None):
        self._username = username.encode('utf-8') if username is not None else None
        self._password = password.encode('utf-8') if password is not None else None
        self.state = AWAITING_METHOD_SELECTION
        self.method = None

    @property
    def required_method(self):
        return METHOD_USERPASS if self._username is not None else METHOD_NO_AUTH

    def select_method(self, offered):
        """Pick the method for the offered list, or 0xFF if none is acceptable."""
        if self.required_method in offered:
            self.method = self.required_method
            self.state = METHOD_CHOSEN
            return self.method
        self.state = CLOSED
        return METHOD_NO_ACCEPTABLE

    def check_credentials(self, uname: bytes, passwd: bytes) -> bool:
        if len(uname) != len(self._username) or len(passwd) != len(self._password):
            return False
        # evaluate both so timing does not reveal which field differed
        user_ok = hmac.compare_digest(uname, self._username)
        pass_ok = hmac.compare_digest(passwd, self._password)
        return user_ok and pass_ok

    def negotiate(self, sock, offered):
        """Run method selection and, if needed, the credential exchange.

        Returns the negotiated method or raises ``AuthRejected``.
        """
        method = self.select_method(offered)
        send_method_selection(sock, method)
        if method == METHOD_NO_ACCEPTABLE:
            raise AuthRejected(f"No acceptable auth method offered: {list(offered)}")

        if method == METHOD_NO_AUTH:
            self.state = AUTHENTICATED
            return method

        self.state = AWAITING_CREDENTIALS
        uname, passwd = read_credentials(sock)
        if not self.check_credentials(uname, passwd):
            self.state = CLOSED
            send_auth_status(sock, AUTH_FAILURE)
            raise AuthRejected(f"Bad credentials for user {uname.decode('utf-8', 'replace')!r}")

        send_auth_status(sock, AUTH_SUCCESS)
        self.state = AUTHENTICATED
        _logger.debug(f"User {uname.decode('utf-8', 'replace')} authenticated")
        return method
