import os
import socket


def default_process_name() -> str:
    """Identify the current process as ``<hostname>:<pid>``.

    Not unique across restarts: a pid can be reused on the same host.
    """
    return f"{socket.gethostname()}:{os.getpid()}"
