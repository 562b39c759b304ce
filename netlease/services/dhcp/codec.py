"""Wire codec between raw DHCP datagrams and DHCPMessage, backed by Scapy.

Only the fields DHCPMessage models are carried:

| DHCPMessage     | Wire                       |
|-----------------|----------------------------|
| dhcp_type       | option 53 `message-type`   |
| subnet_mask     | option 1 `subnet_mask`     |
| router          | option 3 `router`          |
| requested_addr  | option 50 `requested_addr` |
| lease_time      | option 51 `lease_time`     |
| siaddr          | siaddr + option 54 (reply) |
| renew_time      | option 58 `renewal_time`   |
| rebind_time     | option 59 `rebinding_time` |
"""

from ipaddress import IPv4Address
from time import time
from typing import Any

from scapy.layers.dhcp import BOOTP, DHCP
from scapy.packet import Packet

from netlease.services.dhcp.models import (
    CHADDR_SIZE,
    NO_IP_ASSIGNED,
    SERVER_TYPES,
    DHCPMessage,
    DHCPType,
)

BOOTREQUEST = 1
BOOTREPLY = 2
HTYPE_ETHERNET = 1


def extract_options(packet: Packet) -> dict[str, Any]:
    """Collect DHCP options of a packet into a name -> value dict."""
    if not packet.haslayer(DHCP):
        return {}
    return {
        _opt[0]: _opt[1]
        for _opt in packet[DHCP].options
        if isinstance(_opt, tuple) and len(_opt) >= 2
    }


def _to_address(value: Any) -> IPv4Address | None:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if not value:
        return None
    return IPv4Address(value)


def decode_message(data: bytes) -> DHCPMessage | None:
    """Parse a datagram, None when it is not a DHCP message we model."""
    try:
        packet = BOOTP(data)
        options = extract_options(packet)
        dhcp_type = DHCPType(int(options["message-type"]))
    except Exception:
        # Malformed or not DHCP at all
        return None

    hlen = int(packet.hlen)
    chaddr = bytes(packet.chaddr)[:CHADDR_SIZE]
    if 0 < hlen <= CHADDR_SIZE:
        chaddr = chaddr[:hlen]

    try:
        return DHCPMessage(
            dhcp_type=dhcp_type,
            xid=int(packet.xid),
            chaddr=chaddr,
            ciaddr=IPv4Address(packet.ciaddr),
            yiaddr=IPv4Address(packet.yiaddr),
            siaddr=IPv4Address(packet.siaddr),
            giaddr=IPv4Address(packet.giaddr),
            subnet_mask=_to_address(options.get("subnet_mask")) or NO_IP_ASSIGNED,
            requested_addr=_to_address(options.get("requested_addr")),
            router=_to_address(options.get("router")),
            lease_time=int(options.get("lease_time", 0)),
            renew_time=int(options.get("renewal_time", 0)),
            rebind_time=int(options.get("rebinding_time", 0)),
            timestamp=time(),
            flags=int(packet.flags),
            hops=int(packet.hops),
        )
    except (ValueError, TypeError):
        return None


def build_packet(message: DHCPMessage) -> Packet:
    """Build the Scapy BOOTP/DHCP layers for message."""
    is_reply = message.dhcp_type in SERVER_TYPES
    options: list = [("message-type", int(message.dhcp_type))]

    if is_reply and message.siaddr != NO_IP_ASSIGNED:
        options.append(("server_id", str(message.siaddr)))
    if message.requested_addr is not None:
        options.append(("requested_addr", str(message.requested_addr)))
    if message.subnet_mask != NO_IP_ASSIGNED:
        options.append(("subnet_mask", str(message.subnet_mask)))
    if message.router is not None:
        options.append(("router", str(message.router)))
    if message.lease_time:
        options.append(("lease_time", int(message.lease_time)))
    if message.renew_time:
        options.append(("renewal_time", int(message.renew_time)))
    if message.rebind_time:
        options.append(("rebinding_time", int(message.rebind_time)))
    options.append("end")

    return BOOTP(
        op=BOOTREPLY if is_reply else BOOTREQUEST,
        htype=HTYPE_ETHERNET,
        hlen=len(message.chaddr),
        hops=message.hops,
        xid=message.xid,
        flags=message.flags,
        ciaddr=str(message.ciaddr),
        yiaddr=str(message.yiaddr),
        siaddr=str(message.siaddr),
        giaddr=str(message.giaddr),
        chaddr=bytes(message.chaddr).ljust(CHADDR_SIZE, b"\x00"),
    ) / DHCP(options=options)


def encode_message(message: DHCPMessage) -> bytes:
    return bytes(build_packet(message))
