"""
Echo responder for netup.
Sends every received probe datagram straight back to the client.
"""

import logging
import socket
import threading
from enum import Enum
from typing import Optional, Tuple

from ..core.codec import read_return_port
from ..core.config import Address
from ..core.exceptions import BindError, DecodeError

RECV_BUFFER_SIZE = 1024


class EchoPolicy(Enum):
    """Where echoes are addressed."""
    SOURCE = 'source'            # back to the datagram's source address
    RETURN_PORT = 'return_port'  # source IP, port taken from the 2-byte prefix


class Responder:
    """Binds a UDP socket and echoes each datagram it receives."""

    def __init__(self, bind_address: Address, policy: EchoPolicy = EchoPolicy.SOURCE,
                 poll_timeout: float = 0.5):
        self.bind_address = bind_address
        self.policy = policy
        self.poll_timeout = poll_timeout
        self.logger = logging.getLogger(__name__)

        self._sock: Optional[socket.socket] = None
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.received = 0
        self.echoed = 0
        self.failed = 0

    @property
    def local_address(self) -> Optional[Address]:
        if self._sock is None:
            return None
        return self._sock.getsockname()[:2]

    def bind(self) -> Address:
        """Bind the socket. Any failure is fatal to the responder."""
        if self._sock is not None:
            return self.local_address

        self.logger.info(f"Binding responder to {self.bind_address[0]}:{self.bind_address[1]}")
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind(self.bind_address)
        except OSError as e:
            sock.close()
            raise BindError(f"Failed to bind responder to {self.bind_address}: {e}") from e

        sock.settimeout(self.poll_timeout)
        self._sock = sock
        self.logger.info(f"Responder ready on {self.local_address}, policy {self.policy.value}")
        return self.local_address

    def start(self) -> None:
        """Bind if needed and run the echo loop in a background thread."""
        if self._running.is_set():
            self.logger.warning("Responder already running")
            return

        self.bind()
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="netup-responder", daemon=True)
        self._thread.start()

        self.logger.info("Responder started")

    def stop(self) -> None:
        """Stop the echo loop and release the socket."""
        self._running.clear()

        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

        if self._sock:
            self._sock.close()
            self._sock = None

        self.logger.info("Responder stopped")

    def serve_forever(self) -> None:
        """Echo datagrams in the calling thread until stop() is called."""
        self.bind()
        self._running.set()
        self._run()

    def _run(self) -> None:
        """Main echo loop."""
        while self._running.is_set():
            self.serve_once()

    def serve_once(self) -> bool:
        """
        Handle at most one datagram.

        Returns True when a datagram was echoed. Receive and send errors
        are logged and reported as False; they never end the loop.
        """
        if self._sock is None:
            raise RuntimeError("Responder is not bound")

        try:
            data, source = self._sock.recvfrom(RECV_BUFFER_SIZE)
        except socket.timeout:
            return False
        except OSError as e:
            if self._running.is_set():
                self.logger.error(f"Failed to receive data: {e}")
            return False

        self.received += 1
        self.logger.debug(f"Received {len(data)} bytes from {source[0]}:{source[1]}")

        destination = self._destination(data, source)
        if destination is None:
            return False

        try:
            self._sock.sendto(data, destination)
        except OSError as e:
            self.failed += 1
            self.logger.error(f"Failed to send to {destination[0]}:{destination[1]}: {e}")
            return False

        self.echoed += 1
        self.logger.debug(f"Sent {len(data)} bytes to {destination[0]}:{destination[1]}")
        return True

    def _destination(self, data: bytes, source: Tuple[str, int]) -> Optional[Address]:
        if self.policy is EchoPolicy.SOURCE:
            return source[0], source[1]
        try:
            return source[0], read_return_port(data)
        except DecodeError as e:
            self.logger.warning(f"Dropping datagram from {source[0]}:{source[1]}: {e}")
            return None

    def get_status(self) -> dict:
        """Get current status of the responder."""
        return {
            'running': self._running.is_set(),
            'local_address': self.local_address,
            'policy': self.policy.value,
            'received': self.received,
            'echoed': self.echoed,
            'failed': self.failed,
        }
