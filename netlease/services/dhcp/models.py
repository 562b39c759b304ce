from dataclasses import dataclass, field
from enum import IntEnum, unique
from ipaddress import IPv4Address, IPv4Network
from time import time

SERVER_PORT = 67
CLIENT_PORT = 68
CHADDR_SIZE = 16
INFINITE_LEASE = 0xFFFFFFFF
NO_IP_ASSIGNED = IPv4Address("0.0.0.0")
BROADCAST_IP = IPv4Address("255.255.255.255")

# WORKFLOW
# | Step | Message Type | Sender | Server Action                               | Relay Action                         |
# |------|--------------|--------|---------------------------------------------|--------------------------------------|
# |  1   | DHCPDISCOVER | client | Allocates an address from the pool          | Stamps giaddr, unicasts to server    |
# |  2   | DHCPOFFER    | server | Broadcasts offer at the sender's port       | Rebroadcasts on the giaddr interface |
# |  3   | DHCPREQUEST  | client | Extends the lease of a known client         | Stamps giaddr, unicasts to server    |
# |  4   | DHCPACK      | server | Unicast if client already owns the address  | Rebroadcasts on the giaddr interface |
# |  5   | DHCPNAK      | server | No lease for client, echoes requested IP    | Rebroadcasts on the giaddr interface |


@unique
class DHCPType(IntEnum):
    DISCOVER = 1
    OFFER = 2
    REQUEST = 3
    ACK = 5
    NAK = 6

    def __str__(self) -> str:
        return str(self.value)


CLIENT_TYPES = frozenset({DHCPType.DISCOVER, DHCPType.REQUEST})
SERVER_TYPES = frozenset({DHCPType.OFFER, DHCPType.ACK, DHCPType.NAK})


@dataclass(frozen=True)
class ClientId:
    """Client hardware address canonicalised to a zero padded 16 byte buffer.

    Hardware addresses of different declared lengths that share their
    leading bytes compare (and hash) equal once canonicalised.
    """

    value: bytes = b""

    def __post_init__(self):
        raw = bytes(self.value)
        if len(raw) > CHADDR_SIZE:
            raise ValueError(
                f"chaddr larger than {CHADDR_SIZE} bytes: {raw.hex(':')}"
            )
        object.__setattr__(self, "value", raw.ljust(CHADDR_SIZE, b"\x00"))

    @classmethod
    def from_mac(cls, mac: str) -> "ClientId":
        """Build from 'aa:bb:cc:dd:ee:ff' or 'aa-bb-cc-dd-ee-ff'."""
        return cls(bytes.fromhex(mac.replace(":", "").replace("-", "")))

    def is_null(self) -> bool:
        return not any(self.value)

    def __str__(self) -> str:
        return self.value.rstrip(b"\x00").hex(":") or "00"


NO_CLIENT = ClientId()


@dataclass
class LeaseRecord:
    address: IPv4Address
    remaining: int

    @property
    def is_infinite(self) -> bool:
        return self.remaining == INFINITE_LEASE

    @property
    def is_expired(self) -> bool:
        return self.remaining == 0


@dataclass(frozen=True)
class RelayInterfaceEntry:
    """Gateway address and mask of one client subnet served by the relay."""

    gateway: IPv4Address
    mask: IPv4Address

    @property
    def network(self) -> IPv4Network:
        return IPv4Network(f"{self.gateway}/{self.mask}", strict=False)


@dataclass(frozen=True)
class NetworkInterface:
    name: str
    address: IPv4Address
    netmask: IPv4Address

    @property
    def network(self) -> IPv4Network:
        return IPv4Network(f"{self.address}/{self.netmask}", strict=False)


@dataclass
class DHCPMessage:
    """Parsed DHCP datagram.

    Attributes:
        dhcp_type (DHCPType): Message type (option 53).
        xid (int): Transaction ID, random number chosen by client.
        chaddr (bytes): Client hardware address, at most 16 bytes.
        ciaddr (IPv4Address): Client IP address (current IP address, if any).
        yiaddr (IPv4Address): 'Your' IP address, the address offered/assigned.
        siaddr (IPv4Address): Server IP address.
        giaddr (IPv4Address): Relay agent IP address (0.0.0.0 if none).
        subnet_mask (IPv4Address): Subnet mask (option 1), 0.0.0.0 if absent.
        requested_addr (IPv4Address | None): Requested IP (option 50).
        router (IPv4Address | None): Default gateway (option 3).
        lease_time (int): Lease time in seconds (option 51).
        renew_time (int): Renewal (T1) time in seconds (option 58).
        rebind_time (int): Rebinding (T2) time in seconds (option 59).
        timestamp (float): Build or receive time, not carried on the wire.
        flags (int): BOOTP flags, 0x8000 requests a broadcast reply.
        hops (int): Relay hop count.
    """

    dhcp_type: DHCPType
    xid: int
    chaddr: bytes
    ciaddr: IPv4Address = NO_IP_ASSIGNED
    yiaddr: IPv4Address = NO_IP_ASSIGNED
    siaddr: IPv4Address = NO_IP_ASSIGNED
    giaddr: IPv4Address = NO_IP_ASSIGNED
    subnet_mask: IPv4Address = NO_IP_ASSIGNED
    requested_addr: IPv4Address | None = None
    router: IPv4Address | None = None
    lease_time: int = 0
    renew_time: int = 0
    rebind_time: int = 0
    timestamp: float = field(default_factory=time)
    flags: int = 0
    hops: int = 0

    @property
    def client_id(self) -> ClientId:
        return ClientId(self.chaddr)

    @property
    def is_relayed(self) -> bool:
        return self.giaddr != NO_IP_ASSIGNED

    @property
    def requested_address(self) -> IPv4Address | None:
        """Option 50, or ciaddr for clients renewing an address they hold."""
        if self.requested_addr is not None:
            return self.requested_addr
        if self.ciaddr != NO_IP_ASSIGNED:
            return self.ciaddr
        return None
