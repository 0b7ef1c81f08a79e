"""Direct peer-to-peer file transfer with code-based rendezvous."""

__version__ = "0.1.0"
