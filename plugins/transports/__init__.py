"""Built-in delivery transports -- implementations of the Transport protocol."""

from plugins.transports.capture import CaptureTransport
from plugins.transports.http import HttpCollectorTransport

__all__ = ["CaptureTransport", "HttpCollectorTransport"]
