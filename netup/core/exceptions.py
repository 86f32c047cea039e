"""
Exceptions raised by netup.
"""


class NetupError(Exception):
    """Base exception for netup errors"""
    pass


class DecodeError(NetupError):
    """Raised when a datagram cannot be decoded into a probe message"""
    pass


class BindError(NetupError):
    """Raised when a socket cannot be bound to the requested address"""
    pass


class PortExhaustedError(BindError):
    """Raised when every port in the local scan range is in use"""
    pass


class StoreOrderError(AssertionError):
    """Raised when a record is inserted out of send-time order"""
    pass
