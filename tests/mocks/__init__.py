"""Mock objects for testing."""

from .mock_rpc_session import HANG, MockRpcSession, make_item, make_symbol
from .mock_server_handle import NO_REPLY, MockServerHandle, MockStreamWriter

__all__ = [
    "HANG",
    "NO_REPLY",
    "MockRpcSession",
    "MockServerHandle",
    "MockStreamWriter",
    "make_item",
    "make_symbol",
]
