"""Errors reported through the status callback of a transfer attempt."""


class P2PError(Exception):
    """Base class for every failure that ends an attempt."""


class SignalingError(P2PError):
    """A rendezvous HTTP call failed."""


class SessionNotFound(SignalingError):
    """The code is unknown or its session has expired."""


class NegotiationError(P2PError):
    """An offer or answer was malformed or rejected."""


class TransportError(P2PError):
    """The direct connection or its data channel failed."""


class ReadError(P2PError):
    """The local file could not be read."""
