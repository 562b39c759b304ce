from collections import OrderedDict
from ipaddress import IPv4Address

from netlease.libs.errors import ConfigError, ConflictError, RangeError
from netlease.services.dhcp.models import (
    INFINITE_LEASE,
    NO_CLIENT,
    ClientId,
    LeaseRecord,
)


class LeaseTable:
    """Address pool and per client lease records.

    Every address in [min_address, max_address] is in exactly one state:

    - available: in the fresh queue, never assigned yet (FIFO).
    - leased: owned by a record with remaining seconds > 0 or INFINITE.
    - reclaimable: owned by a record at 0 whose client id sits in the
      reclaim queue (insertion order = expiry order).

    Example:
        table = LeaseTable(IPv4Address("10.0.0.2"), IPv4Address("10.0.0.5"),
                           own_address=IPv4Address("10.0.0.1"), lease_time=30)
        table.allocate(ClientId(b"\\x02" * 6))  # IPv4Address('10.0.0.2')

    Not thread safe, callers serialise access.
    """

    def __init__(
        self,
        min_address: IPv4Address,
        max_address: IPv4Address,
        own_address: IPv4Address,
        lease_time: int,
    ):
        min_address = IPv4Address(min_address)
        max_address = IPv4Address(max_address)
        own_address = IPv4Address(own_address)

        if min_address >= max_address:
            raise ConfigError(f"Invalid address range {min_address} - {max_address}.")
        if not 0 < lease_time < INFINITE_LEASE:
            raise ConfigError(f"Invalid lease time {lease_time}.")

        self.min_address = min_address
        self.max_address = max_address
        self.own_address = own_address
        self.lease_time = int(lease_time)

        self._leases: dict[ClientId, LeaseRecord] = {
            NO_CLIENT: LeaseRecord(address=own_address, remaining=INFINITE_LEASE)
        }
        self._available: OrderedDict[IPv4Address, None] = OrderedDict(
            (IPv4Address(_ip), None)
            for _ip in range(int(min_address), int(max_address) + 1)
            if _ip != int(own_address)
        )
        self._reclaimable: OrderedDict[ClientId, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._leases)

    def __contains__(self, client_id: ClientId) -> bool:
        return client_id in self._leases

    @property
    def available(self) -> list[IPv4Address]:
        """Never assigned addresses in the order they will be handed out."""
        return list(self._available)

    @property
    def reclaimable(self) -> list[ClientId]:
        """Expired clients, oldest first."""
        return list(self._reclaimable)

    def in_range(self, address: IPv4Address | None) -> bool:
        if address is None:
            return False
        return self.min_address <= IPv4Address(address) <= self.max_address

    def leases(self) -> dict[ClientId, LeaseRecord]:
        """Snapshot of all records, the server's own included."""
        return {
            _client_id: LeaseRecord(_record.address, _record.remaining)
            for _client_id, _record in self._leases.items()
        }

    def lookup(self, client_id: ClientId) -> LeaseRecord | None:
        return self._leases.get(client_id)

    def allocate(self, client_id: ClientId) -> IPv4Address | None:
        """Pick an address for client_id.

        Returns:
            IPv4Address | None: The address, or None when the pool is exhausted.

        """
        record = self._leases.get(client_id)
        if record is not None:
            # Known client came back, its address is no longer reclaimable.
            self._reclaimable.pop(client_id, None)
            if not record.is_infinite:
                record.remaining = self.lease_time
            return record.address

        if self._available:
            address, _ = self._available.popitem(last=False)
        elif self._reclaimable:
            oldest, _ = self._reclaimable.popitem(last=False)
            address = self._leases.pop(oldest).address
        else:
            return None

        self._leases[client_id] = LeaseRecord(address=address, remaining=self.lease_time)
        return address

    def renew(self, client_id: ClientId, requested_address: IPv4Address) -> IPv4Address | None:
        """Extend the lease of client_id by the lease time.

        The extension is added to what is left, it does not reset it.
        requested_address is not checked against the stored one, the stored
        address is what gets acknowledged.

        Returns:
            IPv4Address | None: Stored address (ACK) or None (NAK).

        """
        record = self._leases.get(client_id)
        if record is None:
            return None

        if not record.is_infinite:
            record.remaining = min(record.remaining + self.lease_time, INFINITE_LEASE - 1)
            self._reclaimable.pop(client_id, None)
        return record.address

    def tick(self) -> list[ClientId]:
        """Age every finite lease by one second.

        Returns:
            list[ClientId]: Clients whose lease reached zero on this tick.

        """
        expired = []
        for client_id, record in self._leases.items():
            if record.is_infinite or record.is_expired:
                continue
            record.remaining -= 1
            if record.is_expired and client_id not in self._reclaimable:
                self._reclaimable[client_id] = None
                expired.append(client_id)
        return expired

    def add_static_entry(self, client_id: ClientId, address: IPv4Address):
        """Reserve address for client_id permanently.

        Raises:
            RangeError: address outside the pool.
            ConflictError: client already has a record, or address is held.

        """
        address = IPv4Address(address)
        if not self.in_range(address):
            raise RangeError(
                f"Address {address} is not in [{self.min_address}, {self.max_address}]."
            )
        if client_id in self._leases:
            raise ConflictError(
                f"Client {client_id} has already an active lease: "
                f"{self._leases[client_id].address}."
            )
        for _owner, _record in self._leases.items():
            if _record.address == address:
                raise ConflictError(f"Address {address} is already held by {_owner}.")

        self._available.pop(address, None)
        self._leases[client_id] = LeaseRecord(address=address, remaining=INFINITE_LEASE)
