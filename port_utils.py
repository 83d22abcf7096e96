import socket


def find_free_port(host=''):
    """Ask the OS for an unused TCP port and return its number."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.bind((host, 0))
        return s.getsockname()[1]
    finally:
        s.close()
