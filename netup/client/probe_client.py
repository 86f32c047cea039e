"""
Probe client for netup.
Sends timestamped probes at a fixed interval and reports verified echoes.
"""

import errno
import logging
import socket
import threading
import time
from typing import Optional, Tuple

from ..core import codec
from ..core.clock import Clock, now_ms
from ..core.config import Address
from ..core.events import EventChannel, ReceivedEvent, SentEvent
from ..core.exceptions import BindError, DecodeError, PortExhaustedError

RECV_BUFFER_SIZE = 1024
DEFAULT_PORT_RANGE = (56701, 65535)


class ProbeClient:
    """
    Owns the probe socket, the next index and the next send deadline.

    A single loop interleaves sending (when the deadline is reached) with
    one non-blocking receive per iteration. At most one probe is sent per
    clock tick so send times stay strictly increasing, and a deadline that
    falls more than one interval behind is moved to the next interval.
    """

    def __init__(self,
                 remote_address: Address,
                 events: EventChannel,
                 bind_address: Optional[Address] = None,
                 interval_ms: int = 10,
                 port_range: Tuple[int, int] = DEFAULT_PORT_RANGE,
                 addressed: bool = False,
                 idle_sleep: float = 0.0,
                 clock: Clock = now_ms):
        if interval_ms <= 0:
            raise ValueError("Probe interval must be positive")
        self.remote_address = remote_address
        self.events = events
        self.bind_address = bind_address
        self.interval_ms = interval_ms
        self.port_range = port_range
        self.addressed = addressed
        self.idle_sleep = idle_sleep
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._sock: Optional[socket.socket] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.local_port: Optional[int] = None
        self.next_index = 0
        self.next_send_deadline: Optional[int] = None
        self._last_sent_time: Optional[int] = None

        self.sent = 0
        self.received = 0
        self.dropped = 0

    def bind(self) -> int:
        """Bind the probe socket and return the local port."""
        if self._sock is not None:
            return self.local_port

        if self.bind_address is not None:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind(self.bind_address)
            except OSError as e:
                sock.close()
                raise BindError(f"Failed to bind client to {self.bind_address}: {e}") from e
        else:
            sock = self._acquire_port()

        sock.setblocking(False)
        self._sock = sock
        self.local_port = sock.getsockname()[1]
        self.logger.info(f"Probe socket bound to local port {self.local_port}")
        return self.local_port

    def _acquire_port(self) -> socket.socket:
        """Bind the first free port in the scan range."""
        first, last = self.port_range
        for port in range(first, last + 1):
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind(('0.0.0.0', port))
                return sock
            except OSError as e:
                sock.close()
                if e.errno == errno.EADDRINUSE:
                    self.logger.debug(f"Local port {port} in use, trying next")
                    continue
                raise BindError(f"Failed to bind client to port {port}: {e}") from e
        raise PortExhaustedError(f"No free local port in range {first}-{last}")

    def start(self) -> None:
        """Bind if needed and run the probe loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            self.logger.warning("Probe client already running")
            return

        self.bind()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="netup-client", daemon=True)
        self._thread.start()

        self.logger.info(
            f"Probe client started: {self.remote_address[0]}:{self.remote_address[1]} "
            f"every {self.interval_ms}ms"
        )

    def stop(self) -> None:
        """Signal the loop to stop, wait for it and close the socket."""
        self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

        if self._sock:
            self._sock.close()
            self._sock = None

        self.logger.info("Probe client stopped")

    def run(self) -> None:
        """Main probe loop; returns once stop() is called."""
        self.bind()
        while not self._stop_event.is_set():
            busy = self.step()
            if not busy and self.idle_sleep:
                time.sleep(self.idle_sleep)

    def step(self) -> bool:
        """Run one loop iteration. Returns True if a probe was sent or received."""
        if self._sock is None:
            raise RuntimeError("Probe client is not bound")

        now = self.clock()
        if self.next_send_deadline is None:
            self.next_send_deadline = now

        busy = False
        if now >= self.next_send_deadline and (
                self._last_sent_time is None or now > self._last_sent_time):
            self._send_probe(now)
            busy = True

        if self._receive():
            busy = True
        return busy

    def _send_probe(self, timestamp: int) -> None:
        message = codec.build(self.next_index, timestamp)
        if self.addressed:
            wire = codec.encode_addressed(message, self.local_port)
        else:
            wire = codec.encode(message)

        self.next_send_deadline += self.interval_ms
        if self.next_send_deadline <= timestamp:
            # More than one interval behind, e.g. after a clock jump
            self.next_send_deadline = timestamp + self.interval_ms
        try:
            self._sock.sendto(wire, self.remote_address)
        except OSError as e:
            self.logger.error(f"Failed to send probe {self.next_index}: {e}")
            return

        self.events.publish(SentEvent(self.next_index, timestamp))
        self.logger.debug(f"Sent probe {self.next_index} at {timestamp}")

        self._last_sent_time = timestamp
        self.next_index += 1
        self.sent += 1

    def _receive(self) -> bool:
        try:
            data, source = self._sock.recvfrom(RECV_BUFFER_SIZE)
        except BlockingIOError:
            return False
        except OSError as e:
            self.logger.error(f"Failed to receive data: {e}")
            return False

        received_time = self.clock()
        try:
            if self.addressed:
                _, message = codec.decode_addressed(data)
            else:
                message = codec.decode(data)
        except DecodeError as e:
            self.dropped += 1
            self.logger.warning(f"Failed to decode datagram from {source[0]}:{source[1]}: {e}")
            return True

        if not codec.verify(message):
            self.dropped += 1
            self.logger.warning(f"Hash check failed for presumed index {message.index}")
            return True

        self.events.publish(ReceivedEvent(message.index, received_time, message.sent_time))
        self.received += 1
        self.logger.debug(
            f"Received index {message.index} with delta {received_time - message.sent_time}ms"
        )
        return True

    def get_status(self) -> dict:
        """Get current status of the probe client."""
        return {
            'running': self._thread is not None and self._thread.is_alive(),
            'local_port': self.local_port,
            'next_index': self.next_index,
            'sent': self.sent,
            'received': self.received,
            'dropped': self.dropped,
        }
