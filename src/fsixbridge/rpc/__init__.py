"""JSON-RPC channel and request cancellation."""

from fsixbridge.rpc.cancellation import (
    CancellationToken,
    CancellationTokenSource,
    with_cancellation,
)
from fsixbridge.rpc.channel import CANCEL_METHOD, MessageChannel

__all__ = [
    "CANCEL_METHOD",
    "CancellationToken",
    "CancellationTokenSource",
    "MessageChannel",
    "with_cancellation",
]
