"""CAN bus tools: bit timing, frame length, bus load, full-duplex test and BCM server."""

__version__ = "0.1.0"