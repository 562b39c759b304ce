from ipaddress import IPv4Address

import pytest
from conftest import ETH0, FakeTransport, ManualScheduler, make_message

from netlease.libs.errors import ConfigError, ConflictError, RangeError
from netlease.services.dhcp.models import (
    BROADCAST_IP,
    CLIENT_PORT,
    NO_IP_ASSIGNED,
    SERVER_PORT,
    ClientId,
    DHCPType,
    NetworkInterface,
)
from netlease.services.dhcp.server import DHCPServer, is_request_valid

C1 = "02:00:00:00:00:01"
C2 = "02:00:00:00:00:02"
RELAY_GATEWAY = IPv4Address("192.168.1.1")
RELAY_UPSTREAM = IPv4Address("10.0.0.254")


def discover(transport, mac, xid=0x1234, sender="0.0.0.0", **fields):
    transport.deliver(
        make_message(DHCPType.DISCOVER, mac, xid=xid, **fields), sender, CLIENT_PORT, "eth0"
    )


def request(transport, mac, requested, sender="0.0.0.0", xid=0x1234, **fields):
    transport.deliver(
        make_message(
            DHCPType.REQUEST, mac, xid=xid, requested_addr=IPv4Address(requested), **fields
        ),
        sender,
        CLIENT_PORT,
        "eth0",
    )


def test_start_binds_and_schedules(server, transport, scheduler):
    server.start()

    # Positive
    assert server.running
    assert server.own_address == IPv4Address("10.0.0.1")
    assert transport.bound_port == SERVER_PORT
    assert transport.allow_broadcast
    assert transport.callback == server.handle_message
    assert len(scheduler.tasks) == 1
    assert scheduler.tasks[0].interval == 1

    server.stop()
    assert not server.running
    assert transport.closed
    assert transport.callback is None
    assert scheduler.tasks[0].cancelled


def test_start_twice(started_server):
    # Negative
    with pytest.raises(RuntimeError):
        started_server.start()


def test_stop_not_started(server):
    # Negative
    with pytest.raises(RuntimeError):
        server.stop()


def test_start_without_pool_interface(transport, scheduler):
    server = DHCPServer(
        transport=transport,
        scheduler=scheduler,
        pool_start="172.16.0.2",
        pool_end="172.16.0.5",
        pool_mask="255.255.255.0",
        interfaces=[ETH0],
    )

    # Negative
    with pytest.raises(ConfigError):
        server.start()
    assert not server.running
    assert transport.bound_port is None


def test_start_with_inverted_pool(transport, scheduler):
    server = DHCPServer(
        transport=transport,
        scheduler=scheduler,
        pool_start="10.0.0.5",
        pool_end="10.0.0.2",
        pool_mask="255.255.255.0",
        interfaces=[ETH0],
    )

    # Negative
    with pytest.raises(ConfigError):
        server.start()
    assert not server.running
    assert server._lease_table is None


def test_discover_then_request(started_server, transport):
    discover(transport, C1)

    offer, address, port, interface = transport.sent[0]

    # Positive
    assert offer.dhcp_type == DHCPType.OFFER
    assert offer.yiaddr == IPv4Address("10.0.0.2")
    assert offer.xid == 0x1234
    assert offer.client_id == ClientId.from_mac(C1)
    assert offer.siaddr == IPv4Address("10.0.0.1")
    assert offer.subnet_mask == IPv4Address("255.255.255.0")
    assert offer.giaddr == NO_IP_ASSIGNED
    assert (offer.lease_time, offer.renew_time, offer.rebind_time) == (30, 15, 25)
    assert (address, port, interface) == (BROADCAST_IP, CLIENT_PORT, "eth0")

    request(transport, C1, "10.0.0.2", sender="10.0.0.2")
    ack, address, port, _ = transport.sent[1]

    assert ack.dhcp_type == DHCPType.ACK
    assert ack.yiaddr == IPv4Address("10.0.0.2")
    assert (address, port) == (IPv4Address("10.0.0.2"), CLIENT_PORT)
    assert started_server.lease_table.lookup(ClientId.from_mac(C1)).remaining == 60
    assert started_server.stats.get("sent_offer") == 1
    assert started_server.stats.get("sent_ack") == 1


def test_request_from_unconfigured_client_is_broadcast(started_server, transport):
    discover(transport, C1)
    request(transport, C1, "10.0.0.2")

    ack, address, port, _ = transport.sent[1]

    # Positive
    assert ack.dhcp_type == DHCPType.ACK
    assert (address, port) == (BROADCAST_IP, CLIENT_PORT)


def test_request_with_ciaddr(started_server, transport):
    discover(transport, C1)
    transport.deliver(
        make_message(DHCPType.REQUEST, C1, ciaddr=IPv4Address("10.0.0.2")),
        "10.0.0.2",
        CLIENT_PORT,
        "eth0",
    )

    ack, address, _, _ = transport.sent[1]

    # Positive
    assert ack.dhcp_type == DHCPType.ACK
    assert address == IPv4Address("10.0.0.2")


def test_exhaustion_gets_no_reply(started_server, transport):
    for _n in range(1, 5):
        discover(transport, f"02:00:00:00:01:0{_n}", xid=_n)

    # Positive
    assert [_sent.message.yiaddr for _sent in transport.sent] == [
        IPv4Address("10.0.0.2"),
        IPv4Address("10.0.0.3"),
        IPv4Address("10.0.0.4"),
        IPv4Address("10.0.0.5"),
    ]

    # Negative
    discover(transport, "02:00:00:00:01:05", xid=5)
    assert len(transport.sent) == 4
    assert started_server.stats.get("exhausted") == 1


def test_static_reservation_is_reoffered(server, transport):
    server.add_static_entry(ClientId.from_mac(C2), "10.0.0.4")
    server.start()

    discover(transport, C2)
    discover(transport, C1)

    # Positive
    assert transport.sent[0].message.yiaddr == IPv4Address("10.0.0.4")
    assert transport.sent[1].message.yiaddr == IPv4Address("10.0.0.2")
    assert server.lease_table.lookup(ClientId.from_mac(C2)).is_infinite
    server.stop()


def test_static_reservation_after_start(started_server):
    started_server.add_static_entry(ClientId.from_mac(C2), "10.0.0.5")

    # Positive
    assert started_server.lease_table.lookup(ClientId.from_mac(C2)).address == IPv4Address(
        "10.0.0.5"
    )

    # Negative
    with pytest.raises(RangeError):
        started_server.add_static_entry(ClientId.from_mac(C1), "10.0.1.5")


def test_static_reservation_before_start_is_checked(server):
    server.add_static_entry(ClientId.from_mac(C2), "10.0.0.3")

    # Negative
    with pytest.raises(RangeError):
        server.add_static_entry(ClientId.from_mac("02:00:00:00:00:09"), "10.0.1.9")
    with pytest.raises(RangeError):
        server.add_static_entry(ClientId.from_mac("02:00:00:00:00:09"), "10.0.0.1")
    with pytest.raises(ConflictError):
        server.add_static_entry(ClientId.from_mac(C1), "10.0.0.3")
    with pytest.raises(ConflictError):
        server.add_static_entry(ClientId.from_mac(C2), "10.0.0.4")

    # No partial mutation
    assert server.static_leases == {ClientId.from_mac(C2): IPv4Address("10.0.0.3")}

    # Positive
    server.start()
    assert server.lease_table.lookup(ClientId.from_mac(C2)).address == IPv4Address("10.0.0.3")
    server.stop()


def test_constructor_reservations_are_checked(transport, scheduler):
    # Negative
    with pytest.raises(RangeError):
        DHCPServer(
            transport=transport,
            scheduler=scheduler,
            pool_start="10.0.0.2",
            pool_end="10.0.0.5",
            pool_mask="255.255.255.0",
            static_leases={ClientId.from_mac(C1): IPv4Address("10.0.0.9")},
            interfaces=[ETH0],
        )


def test_failed_start_leaves_no_lease_table(transport, scheduler):
    server = DHCPServer(
        transport=transport,
        scheduler=scheduler,
        pool_start="10.0.0.1",
        pool_end="10.0.0.5",
        pool_mask="255.255.255.0",
        static_leases={ClientId.from_mac(C1): IPv4Address("10.0.0.1")},
        interfaces=[ETH0],
    )

    # Negative
    with pytest.raises(ConflictError):
        server.start()
    assert server._lease_table is None
    assert server.own_address == NO_IP_ASSIGNED
    assert not server.running
    assert transport.bound_port is None
    assert scheduler.tasks == []
    with pytest.raises(RuntimeError):
        server.lease_table


def test_request_out_of_range_is_ignored(started_server, transport):
    discover(transport, C1)
    request(transport, C1, "10.0.0.9")
    request(transport, C1, "192.168.1.10")

    # Negative
    assert len(transport.sent) == 1
    assert started_server.stats.get("dropped_out_of_range") == 2


def test_request_without_lease_is_nacked(started_server, transport):
    request(transport, C1, "10.0.0.3")

    nak, address, port, _ = transport.sent[0]

    # Positive
    assert nak.dhcp_type == DHCPType.NAK
    assert nak.yiaddr == IPv4Address("10.0.0.3")
    assert (address, port) == (BROADCAST_IP, CLIENT_PORT)
    assert started_server.stats.get("sent_nak") == 1

    # Negative
    assert ClientId.from_mac(C1) not in started_server.lease_table


def test_relayed_messages_echo_gateway(started_server, transport):
    relay_fields = {"giaddr": RELAY_GATEWAY, "subnet_mask": IPv4Address("255.255.255.0")}
    transport.deliver(
        make_message(DHCPType.DISCOVER, C1, hops=1, **relay_fields),
        RELAY_UPSTREAM,
        CLIENT_PORT,
        "eth0",
    )
    transport.deliver(
        make_message(
            DHCPType.REQUEST, C1, requested_addr=IPv4Address("10.0.0.2"), **relay_fields
        ),
        RELAY_UPSTREAM,
        CLIENT_PORT,
        "eth0",
    )
    transport.deliver(
        make_message(
            DHCPType.REQUEST, C2, requested_addr=IPv4Address("10.0.0.3"), **relay_fields
        ),
        RELAY_UPSTREAM,
        CLIENT_PORT,
        "eth0",
    )

    offer, ack, nak = (_sent.message for _sent in transport.sent)

    # Positive
    for _reply in (offer, ack, nak):
        assert _reply.giaddr == RELAY_GATEWAY
        assert _reply.subnet_mask == IPv4Address("255.255.255.0")
    assert (offer.dhcp_type, ack.dhcp_type, nak.dhcp_type) == (
        DHCPType.OFFER,
        DHCPType.ACK,
        DHCPType.NAK,
    )
    assert transport.sent[0].port == CLIENT_PORT


def test_tick_expires_leases(started_server, transport, scheduler):
    discover(transport, C1)
    scheduler.tasks[0].fire(29)

    # Negative
    assert started_server.lease_table.reclaimable == []

    # Positive
    scheduler.tasks[0].fire()
    assert started_server.lease_table.reclaimable == [ClientId.from_mac(C1)]


def test_expired_address_is_reoffered_to_new_client(started_server, transport, scheduler):
    for _n in range(1, 5):
        discover(transport, f"02:00:00:00:01:0{_n}", xid=_n)
    scheduler.tasks[0].fire(30)

    discover(transport, "02:00:00:00:01:05", xid=5)

    # Positive
    assert transport.sent[-1].message.yiaddr == IPv4Address("10.0.0.2")
    assert ClientId.from_mac("02:00:00:00:01:01") not in started_server.lease_table


def test_canonical_chaddr_matches_same_client(started_server, transport):
    discover(transport, C1)
    transport.deliver(
        make_message(DHCPType.DISCOVER, C1.replace(":", "") + "00000000"),
        "0.0.0.0",
        CLIENT_PORT,
        "eth0",
    )

    # Positive
    assert transport.sent[0].message.yiaddr == transport.sent[1].message.yiaddr
    assert len(started_server.lease_table) == 2


def test_malformed_and_unsupported_are_dropped(started_server, transport):
    transport.deliver(
        make_message(DHCPType.DISCOVER, "00:00:00:00:00:00"), "0.0.0.0", CLIENT_PORT, "eth0"
    )
    transport.deliver(make_message(DHCPType.OFFER, C1), "0.0.0.0", CLIENT_PORT, "eth0")
    transport.deliver(make_message(DHCPType.ACK, C1), "0.0.0.0", CLIENT_PORT, "eth0")

    # Negative
    assert transport.sent == []
    assert started_server.stats.get("received_malformed") == 1
    assert started_server.stats.get("dropped_unsupported") == 2


def test_message_before_start_is_ignored(server, transport):
    server.handle_message(make_message(DHCPType.DISCOVER, C1), NO_IP_ASSIGNED, CLIENT_PORT)

    # Negative
    assert transport.sent == []


def test_send_failure_is_counted():
    transport = FakeTransport(sent_bytes=-1)
    server = DHCPServer(
        transport=transport,
        scheduler=ManualScheduler(),
        pool_start="10.0.0.2",
        pool_end="10.0.0.5",
        pool_mask="255.255.255.0",
        interfaces=[ETH0],
    )
    server.start()
    discover(transport, C1)

    # Negative
    assert server.stats.get("send_failed") == 1
    assert server.stats.get("sent_total") == 0
    server.stop()


def test_source_address_follows_ingress_interface(transport, scheduler):
    eth1 = NetworkInterface(
        name="eth1",
        address=IPv4Address("10.0.0.100"),
        netmask=IPv4Address("255.255.255.0"),
    )
    server = DHCPServer(
        transport=transport,
        scheduler=scheduler,
        pool_start="10.0.0.2",
        pool_end="10.0.0.5",
        pool_mask="255.255.255.0",
        interfaces=[ETH0, eth1],
    )
    server.start()
    transport.deliver(make_message(DHCPType.DISCOVER, C1), "0.0.0.0", CLIENT_PORT, "eth1")

    # Positive
    assert transport.sent[0].message.siaddr == IPv4Address("10.0.0.100")
    assert transport.sent[0].interface == "eth1"
    server.stop()


def test_is_request_valid():
    # Positive
    assert is_request_valid(make_message(DHCPType.DISCOVER, C1))

    # Negative
    assert not is_request_valid(make_message(DHCPType.DISCOVER, ""))
    assert not is_request_valid(make_message(DHCPType.DISCOVER, "000000"))
