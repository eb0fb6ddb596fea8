"""Journal server: the remote end of the sync protocol."""

from .app import create_app
from .server_store import ServerStore

__all__ = ["ServerStore", "create_app"]
