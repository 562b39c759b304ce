from dataclasses import replace
from ipaddress import IPv4Address
from logging import Logger
from threading import RLock

from cachetools import TTLCache

from netlease.config.config import config
from netlease.libs.errors import ConfigError, ConflictError
from netlease.libs.libs import measure_latency_decorator
from netlease.services.dhcp.metrics import DHCPStats, dhcp_metrics
from netlease.services.dhcp.models import (
    BROADCAST_IP,
    CLIENT_PORT,
    CLIENT_TYPES,
    SERVER_PORT,
    SERVER_TYPES,
    DHCPMessage,
    DHCPType,
    NetworkInterface,
    RelayInterfaceEntry,
)
from netlease.services.dhcp.utils import (
    find_interface_by_name,
    find_relay_entry_for_interface,
    list_ipv4_interfaces,
)
from netlease.services.logger.logger import MainLogger

TRANSACTION_CACHE = config.get("dhcp").get("relay").get("transaction_cache")
CACHE_SIZE = int(TRANSACTION_CACHE.get("size"))
CACHE_TTL = float(TRANSACTION_CACHE.get("ttl"))

relay_logger: Logger = MainLogger.get_logger(service_name="DHCP-RELAY", log_level="debug")


class DHCPRelay:
    """Stateless DHCP relay between client subnets and one upstream server.

    Client side (port 67): DISCOVER/REQUEST get giaddr and the client subnet
    mask stamped and are unicast to the server.
    Server side (port 68): OFFER/ACK/NAK are broadcast on the client
    interface picked from the echoed giaddr.

    The xid -> ingress interface cache only cross checks the reply path, it
    never routes a reply.

    Client messages are stamped by ingress interface, so each client
    interface carries exactly one relayed subnet. start() rejects two
    gateways on the same interface.
    """

    def __init__(
        self,
        client_transport,
        server_transport,
        server_address: IPv4Address | str,
        relay_interfaces: list[RelayInterfaceEntry] | None = None,
        interfaces: list[NetworkInterface] | None = None,
        cache_size: int = CACHE_SIZE,
        cache_ttl: float = CACHE_TTL,
        logger: Logger = relay_logger,
    ):
        self._lock = RLock()
        self.client_transport = client_transport
        self.server_transport = server_transport
        self.server_address = IPv4Address(server_address)
        self.logger = logger
        self.stats = DHCPStats()
        self.running = False

        self._interfaces = interfaces
        self._relay_interfaces: list[RelayInterfaceEntry] = []
        self._transactions: TTLCache = TTLCache(maxsize=cache_size, ttl=cache_ttl)

        for _entry in relay_interfaces or []:
            self.add_relay_interface(_entry.gateway, _entry.mask)

    @property
    def interfaces(self) -> list[NetworkInterface]:
        if self._interfaces is None:
            self._interfaces = list_ipv4_interfaces()
        return self._interfaces

    @property
    def relay_interfaces(self) -> list[RelayInterfaceEntry]:
        return list(self._relay_interfaces)

    def add_relay_interface(self, gateway: IPv4Address | str, mask: IPv4Address | str) -> None:
        """Add gateway address and mask of a client subnet.

        Raises:
            ConflictError: The subnet is already served.

        """
        entry = RelayInterfaceEntry(gateway=IPv4Address(gateway), mask=IPv4Address(mask))
        with self._lock:
            for _existing in self._relay_interfaces:
                if _existing.network == entry.network:
                    raise ConflictError(f"Subnet {entry.network} already relayed.")
            self._relay_interfaces.append(entry)

    def start(self) -> None:
        with self._lock:
            if self.running:
                raise RuntimeError("DHCP relay already running.")
            if not self._relay_interfaces:
                raise ConfigError("No client subnet configured for the relay.")

            gateway_ifaces: dict[str, IPv4Address] = {}
            for _entry in self._relay_interfaces:
                iface = next(
                    (_iface for _iface in self.interfaces if _iface.address == _entry.gateway),
                    None,
                )
                if iface is None:
                    raise ConfigError(f"Relay gateway {_entry.gateway} is not a local address.")
                if iface.name in gateway_ifaces:
                    raise ConfigError(
                        f"Relay gateways {gateway_ifaces[iface.name]} and {_entry.gateway} "
                        f"share interface {iface.name}."
                    )
                gateway_ifaces[iface.name] = _entry.gateway

            self.client_transport.bind(SERVER_PORT, allow_broadcast=True)
            self.client_transport.on_receive(self.handle_client_message)
            self.server_transport.bind(CLIENT_PORT, allow_broadcast=True)
            self.server_transport.on_receive(self.handle_server_message)
            self.running = True
            self.logger.info(
                "Started relay to %s for %s.",
                self.server_address,
                ", ".join(str(_entry.network) for _entry in self._relay_interfaces),
            )

    def stop(self) -> None:
        with self._lock:
            if not self.running:
                raise RuntimeError("Relay not running.")
            for _transport in (self.client_transport, self.server_transport):
                _transport.on_receive(None)
                _transport.close()
            self._transactions.clear()
            self.running = False
            self.logger.info(
                "Stopped %s, stats: %s, latency ms: %s.",
                self.__class__.__name__,
                self.stats.snapshot(),
                dhcp_metrics.get_stats(),
            )

    @measure_latency_decorator(metrics=dhcp_metrics)
    def handle_client_message(
        self,
        dhcp_msg: DHCPMessage,
        sender_address: IPv4Address,
        sender_port: int,
        interface: str | None = None,
    ) -> None:
        """Forward DISCOVER/REQUEST from a client subnet to the server."""
        with self._lock:
            try:
                self.stats.increment("received_total")
                if dhcp_msg.dhcp_type not in CLIENT_TYPES:
                    self.stats.increment("dropped_unsupported")
                    return
                self.stats.increment(f"received_{dhcp_msg.dhcp_type.name.lower()}")

                iface = find_interface_by_name(self.interfaces, interface)
                entry = find_relay_entry_for_interface(self._relay_interfaces, iface)
                if entry is None:
                    self.stats.increment("dropped_unknown_interface")
                    self.logger.debug(
                        "Dropped %s from %s, no relay entry for interface %s.",
                        dhcp_msg.dhcp_type.name,
                        sender_address,
                        interface,
                    )
                    return

                self._transactions[dhcp_msg.xid] = interface
                forwarded = replace(
                    dhcp_msg,
                    giaddr=entry.gateway,
                    subnet_mask=entry.mask,
                    hops=dhcp_msg.hops + 1,
                )
                self._send(
                    self.server_transport, forwarded, self.server_address, SERVER_PORT, None
                )

            except Exception as err:
                self.logger.exception("Error relaying client message: %s.", err)

    @measure_latency_decorator(metrics=dhcp_metrics)
    def handle_server_message(
        self,
        dhcp_msg: DHCPMessage,
        sender_address: IPv4Address,
        sender_port: int,
        interface: str | None = None,
    ) -> None:
        """Broadcast OFFER/ACK/NAK on the client subnet named by giaddr."""
        with self._lock:
            try:
                self.stats.increment("received_total")
                if dhcp_msg.dhcp_type not in SERVER_TYPES:
                    self.stats.increment("dropped_unsupported")
                    return
                self.stats.increment(f"received_{dhcp_msg.dhcp_type.name.lower()}")

                egress = self._egress_interface(dhcp_msg.giaddr)
                if egress is None:
                    self.stats.increment("dropped_unknown_gateway")
                    self.logger.debug(
                        "Dropped %s XID=%s, giaddr %s is not relayed here.",
                        dhcp_msg.dhcp_type.name,
                        dhcp_msg.xid,
                        dhcp_msg.giaddr,
                    )
                    return

                ingress = self._transactions.get(dhcp_msg.xid)
                if ingress is not None and ingress != egress.name:
                    self.logger.warning(
                        "XID=%s arrived on %s but giaddr %s routes to %s.",
                        dhcp_msg.xid,
                        ingress,
                        dhcp_msg.giaddr,
                        egress.name,
                    )
                if dhcp_msg.dhcp_type in (DHCPType.ACK, DHCPType.NAK):
                    self._transactions.pop(dhcp_msg.xid, None)

                self._send(
                    self.client_transport, dhcp_msg, BROADCAST_IP, CLIENT_PORT, egress.name
                )

            except Exception as err:
                self.logger.exception("Error relaying server message: %s.", err)

    def _egress_interface(self, giaddr: IPv4Address) -> NetworkInterface | None:
        for _entry in self._relay_interfaces:
            if _entry.gateway != giaddr:
                continue
            for _iface in self.interfaces:
                if _iface.address == _entry.gateway:
                    return _iface
        return None

    def _send(
        self,
        transport,
        dhcp_msg: DHCPMessage,
        address: IPv4Address,
        port: int,
        interface: str | None,
    ) -> None:
        sent = transport.send_to(dhcp_msg, address, port, interface=interface)
        if sent is None or sent < 0:
            self.stats.increment("send_failed")
            self.logger.error(
                "Error while relaying %s to %s:%s.", dhcp_msg.dhcp_type.name, address, port
            )
            return
        self.stats.increment(f"relayed_{dhcp_msg.dhcp_type.name.lower()}")
        self.logger.debug(
            "Relayed %s XID=%s, CHADDR=%s to %s:%s via %s.",
            dhcp_msg.dhcp_type.name,
            dhcp_msg.xid,
            dhcp_msg.client_id,
            address,
            port,
            interface or "default",
        )
