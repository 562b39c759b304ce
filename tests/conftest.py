from ipaddress import IPv4Address
from typing import NamedTuple

import pytest

from netlease.services.dhcp.models import DHCPMessage, DHCPType, NetworkInterface
from netlease.services.dhcp.server import DHCPServer


class SentMessage(NamedTuple):
    message: DHCPMessage
    address: IPv4Address
    port: int
    interface: str | None


class FakeTransport:
    """In memory transport recording everything sent through it."""

    def __init__(self, sent_bytes: int = 300):
        self.sent: list[SentMessage] = []
        self.bound_port: int | None = None
        self.allow_broadcast: bool | None = None
        self.callback = None
        self.closed = False
        self.sent_bytes = sent_bytes

    def bind(self, port: int, allow_broadcast: bool = True) -> None:
        self.bound_port = port
        self.allow_broadcast = allow_broadcast

    def on_receive(self, callback) -> None:
        self.callback = callback

    def send_to(self, message, address, port, interface=None) -> int:
        self.sent.append(SentMessage(message, IPv4Address(address), port, interface))
        return self.sent_bytes

    def close(self) -> None:
        self.closed = True

    def deliver(self, message, sender_address, sender_port, interface=None):
        self.callback(message, IPv4Address(sender_address), sender_port, interface)


class ManualTask:
    def __init__(self, interval: float, callback):
        self.interval = interval
        self.callback = callback
        self.cancelled = False

    def fire(self, times: int = 1) -> None:
        for _ in range(times):
            self.callback()

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose tasks only run when fired by the test."""

    def __init__(self):
        self.tasks: list[ManualTask] = []

    def schedule_repeating(self, interval, callback, name="repeating-task") -> ManualTask:
        task = ManualTask(interval, callback)
        self.tasks.append(task)
        return task


ETH0 = NetworkInterface(
    name="eth0",
    address=IPv4Address("10.0.0.1"),
    netmask=IPv4Address("255.255.255.0"),
)


def make_message(
    dhcp_type: DHCPType, mac: str, xid: int = 0x1234, **fields
) -> DHCPMessage:
    return DHCPMessage(
        dhcp_type=dhcp_type, xid=xid, chaddr=bytes.fromhex(mac.replace(":", "")), **fields
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def server(transport, scheduler):
    _server = DHCPServer(
        transport=transport,
        scheduler=scheduler,
        pool_start="10.0.0.2",
        pool_end="10.0.0.5",
        pool_mask="255.255.255.0",
        lease_time=30,
        renew_time=15,
        rebind_time=25,
        interfaces=[ETH0],
        tick_interval=1,
    )
    return _server


@pytest.fixture
def started_server(server):
    server.start()
    yield server
    if server.running:
        server.stop()
