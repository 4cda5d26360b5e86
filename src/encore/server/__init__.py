"""HTTP surface of the Encore service: public API, RPC and runtime state."""

from encore.server.api import create_api_app
from encore.server.rpc import create_rpc_app
from encore.server.state import AppState

__all__ = ["AppState", "create_api_app", "create_rpc_app"]
