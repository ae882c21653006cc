"""peerdrop — direct file transfer between two devices on the same LAN.

One side sends: it listens on a well-known port and shows a 6-digit code.
The other side receives: it connects by address and code. Everything runs
on a worker thread that reports back through a queue of event values.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
