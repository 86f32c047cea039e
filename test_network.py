#!/usr/bin/env python3
"""
Loopback tests for the echo responder and the probe client.
"""

import errno
import os
import socket
import time

import pytest

from netup.client import probe_client
from netup.client.probe_client import ProbeClient
from netup.core import codec
from netup.core.events import EventChannel, ReceivedEvent, SentEvent
from netup.core.exceptions import BindError, PortExhaustedError
from netup.recorder.recorder import Recorder
from netup.server.responder import EchoPolicy, Responder

LOCALHOST = '127.0.0.1'


class FakeClock:
    def __init__(self, now=0):
        self.now = now

    def __call__(self):
        return self.now


class FlakySendSocket:
    """Wraps a socket so its first ``failures`` sends raise OSError."""

    def __init__(self, sock, failures=1):
        self.sock = sock
        self.failures = failures

    def sendto(self, data, address):
        if self.failures:
            self.failures -= 1
            raise OSError(errno.ENETUNREACH, os.strerror(errno.ENETUNREACH))
        return self.sock.sendto(data, address)

    def __getattr__(self, name):
        return getattr(self.sock, name)


@pytest.fixture
def udp_socket():
    """Factory for bound loopback sockets with a receive timeout."""
    sockets = []

    def make():
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((LOCALHOST, 0))
        sock.settimeout(2.0)
        sockets.append(sock)
        return sock

    yield make
    for sock in sockets:
        sock.close()


@pytest.fixture
def responder_factory():
    responders = []

    def make(policy=EchoPolicy.SOURCE):
        responder = Responder((LOCALHOST, 0), policy=policy, poll_timeout=0.2)
        responder.bind()
        responders.append(responder)
        return responder

    yield make
    for responder in responders:
        responder.stop()


def step_until(client, predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        client.step()
        if predicate():
            return True
        time.sleep(0.001)
    return False


# Responder

def test_responder_echoes_payload_to_source(udp_socket, responder_factory):
    responder = responder_factory()
    sender = udp_socket()
    payload = os.urandom(40)

    sender.sendto(payload, responder.local_address)
    assert responder.serve_once()

    data, source = sender.recvfrom(1024)
    assert data == payload
    assert source == responder.local_address
    assert responder.get_status()['echoed'] == 1


def test_responder_echoes_to_return_port(udp_socket, responder_factory):
    responder = responder_factory(EchoPolicy.RETURN_PORT)
    transmitter = udp_socket()
    receiver = udp_socket()
    payload = codec.encode_addressed(codec.build(3, 3000), receiver.getsockname()[1])

    transmitter.sendto(payload, responder.local_address)
    assert responder.serve_once()

    data, _ = receiver.recvfrom(1024)
    assert data == payload


def test_responder_drops_datagram_without_return_port(udp_socket, responder_factory):
    responder = responder_factory(EchoPolicy.RETURN_PORT)
    sender = udp_socket()

    sender.sendto(b"\x01", responder.local_address)
    assert responder.serve_once() is False
    assert responder.get_status()['received'] == 1
    assert responder.get_status()['echoed'] == 0


def test_responder_send_failure_is_counted_and_serving_continues(udp_socket, responder_factory):
    responder = responder_factory()
    responder._sock = FlakySendSocket(responder._sock)
    sender = udp_socket()

    sender.sendto(b"first", responder.local_address)
    sender.sendto(b"second", responder.local_address)
    assert responder.serve_once() is False
    assert responder.serve_once() is True

    assert sender.recvfrom(1024)[0] == b"second"
    status = responder.get_status()
    assert (status['received'], status['echoed'], status['failed']) == (2, 1, 1)


def test_responder_thread_survives_send_failure(udp_socket, responder_factory):
    responder = responder_factory()
    responder._sock = FlakySendSocket(responder._sock)
    responder.start()

    sender = udp_socket()
    sender.sendto(b"first", responder.local_address)
    sender.sendto(b"second", responder.local_address)
    assert sender.recvfrom(1024)[0] == b"second"
    assert responder.get_status()['failed'] == 1
    assert responder.get_status()['running']


def test_responder_times_out_quietly(responder_factory):
    responder = responder_factory()
    assert responder.serve_once() is False


def test_responder_bind_failure_is_fatal(responder_factory):
    first = responder_factory()
    second = Responder(first.local_address)
    with pytest.raises(BindError):
        second.bind()


def test_responder_thread_start_stop(udp_socket):
    responder = Responder((LOCALHOST, 0), poll_timeout=0.05)
    responder.start()
    try:
        sender = udp_socket()
        sender.sendto(b"ping", responder.local_address)
        assert sender.recvfrom(1024)[0] == b"ping"
        assert responder.get_status()['running']
    finally:
        responder.stop()
    assert not responder.get_status()['running']


# Port acquisition

def test_client_scans_past_ports_in_use(udp_socket):
    taken = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    taken.bind(('0.0.0.0', 0))
    port = taken.getsockname()[1]
    if port >= 65535 - 64:
        taken.close()
        pytest.skip("ephemeral port too close to the top of the range")
    try:
        client = ProbeClient((LOCALHOST, 9), EventChannel(), port_range=(port, port + 64))
        try:
            assert client.bind() > port
        finally:
            client.stop()
    finally:
        taken.close()


def test_client_port_range_exhausted():
    taken = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    taken.bind(('0.0.0.0', 0))
    port = taken.getsockname()[1]
    try:
        client = ProbeClient((LOCALHOST, 9), EventChannel(), port_range=(port, port))
        with pytest.raises(PortExhaustedError):
            client.bind()
    finally:
        taken.close()


def test_client_non_contention_bind_error_is_fatal(monkeypatch):
    attempts = []

    class RefusingSocket:
        def __init__(self, *args):
            pass

        def bind(self, address):
            attempts.append(address)
            raise OSError(errno.EACCES, "Permission denied")

        def close(self):
            pass

    monkeypatch.setattr(probe_client.socket, 'socket', RefusingSocket)
    client = ProbeClient((LOCALHOST, 9), EventChannel(), port_range=(1000, 1010))
    with pytest.raises(BindError) as excinfo:
        client.bind()
    assert not isinstance(excinfo.value, PortExhaustedError)
    assert len(attempts) == 1


def test_client_explicit_bind_failure_is_fatal(udp_socket):
    taken = udp_socket()
    client = ProbeClient((LOCALHOST, 9), EventChannel(), bind_address=taken.getsockname())
    with pytest.raises(BindError):
        client.bind()


# Scheduling

def test_client_sends_on_schedule(udp_socket):
    remote = udp_socket()
    clock = FakeClock(1000)
    events = EventChannel()
    client = ProbeClient(remote.getsockname(), events, bind_address=(LOCALHOST, 0),
                         interval_ms=10, clock=clock)
    client.bind()
    try:
        for now in (1000, 1000, 1005, 1010, 1050, 1050, 1051, 1060):
            clock.now = now
            client.step()

        # After a stall the missed slots are skipped, not sent in a burst
        assert events.drain() == [
            SentEvent(0, 1000), SentEvent(1, 1010), SentEvent(2, 1050), SentEvent(3, 1060),
        ]
        assert client.next_index == 4
        assert client.next_send_deadline == 1070

        for index, sent_time in enumerate((1000, 1010, 1050, 1060)):
            data, _ = remote.recvfrom(1024)
            message = codec.decode(data)
            assert (message.index, message.sent_time) == (index, sent_time)
            assert codec.verify(message)
    finally:
        client.stop()


def test_client_resumes_interval_after_clock_jump(udp_socket):
    remote = udp_socket()
    clock = FakeClock(1000)
    events = EventChannel()
    client = ProbeClient(remote.getsockname(), events, bind_address=(LOCALHOST, 0),
                         interval_ms=10, clock=clock)
    client.bind()
    try:
        client.step()
        clock.now = 61000
        for _ in range(5):
            client.step()
            clock.now += 1

        assert [event.sent_time for event in events.drain()] == [1000, 61000]
        assert client.next_send_deadline == 61010
    finally:
        client.stop()


def test_client_send_failure_skips_slot(udp_socket):
    remote = udp_socket()
    remote.settimeout(0.2)
    clock = FakeClock(1000)
    events = EventChannel()
    client = ProbeClient(remote.getsockname(), events, bind_address=(LOCALHOST, 0),
                         interval_ms=10, clock=clock)
    client.bind()
    bound = client._sock
    try:
        client._sock = FlakySendSocket(bound)
        client.step()

        assert events.empty()
        assert client.next_index == 0
        assert client.next_send_deadline == 1010
        assert client.get_status()['sent'] == 0
        with pytest.raises(socket.timeout):
            remote.recvfrom(1024)

        clock.now = 1010
        client.step()
        assert events.drain() == [SentEvent(0, 1010)]
        message = codec.decode(remote.recvfrom(1024)[0])
        assert (message.index, message.sent_time) == (0, 1010)
    finally:
        client._sock = bound
        client.stop()


def test_client_drops_malformed_and_tampered_datagrams(udp_socket):
    remote = udp_socket()
    events = EventChannel()
    client = ProbeClient(remote.getsockname(), events, bind_address=(LOCALHOST, 0),
                         clock=FakeClock(1000))
    client.bind()
    try:
        client.step()
        assert events.drain() == [SentEvent(0, 1000)]

        forged = codec.WireMessage(0, 1000, 12345)
        remote.sendto(b"garbage", (LOCALHOST, client.local_port))
        remote.sendto(codec.encode(forged), (LOCALHOST, client.local_port))

        assert step_until(client, lambda: client.dropped == 2)
        assert events.drain() == []
        assert client.get_status()['received'] == 0
    finally:
        client.stop()


# End to end

@pytest.mark.parametrize("policy, addressed", [
    (EchoPolicy.SOURCE, False),
    (EchoPolicy.RETURN_PORT, True),
])
def test_probe_round_trip(responder_factory, policy, addressed):
    responder = responder_factory(policy)
    responder.start()
    events = EventChannel()
    client = ProbeClient(responder.local_address, events, bind_address=(LOCALHOST, 0),
                         interval_ms=5, addressed=addressed)
    client.bind()
    try:
        received = []

        def got_echo():
            received.extend(e for e in events.drain() if isinstance(e, ReceivedEvent))
            return bool(received)

        assert step_until(client, got_echo)
        echo = received[0]
        assert echo.index == 0
        assert echo.received_time >= echo.sent_time
        assert echo.delay >= 0
    finally:
        client.stop()


def test_client_recorder_threads(responder_factory, tmp_path):
    responder = responder_factory()
    responder.start()
    events = EventChannel()
    recorder = Recorder(events, export_path=tmp_path / "history.csv", export_interval=0.05)
    client = ProbeClient(responder.local_address, events, bind_address=(LOCALHOST, 0),
                         interval_ms=5, idle_sleep=0.0005)

    recorder.start()
    client.start()
    try:
        deadline = time.monotonic() + 3.0
        while time.monotonic() < deadline:
            if any(r.received for r in recorder.window(lookback_ms=60_000)):
                break
            time.sleep(0.02)
    finally:
        client.stop()
        recorder.stop()

    assert client.get_status()['sent'] > 0
    assert any(r.received for r in recorder.store)
    lines = (tmp_path / "history.csv").read_text().splitlines()
    assert lines[0] == "index,sent_time,received_time"
    assert len(lines) == len(recorder.store) + 1
