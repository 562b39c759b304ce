from ipaddress import IPv4Address, IPv4Network
from logging import Logger
from threading import RLock

from netlease.config.config import config
from netlease.libs.errors import ConfigError, ConflictError, RangeError
from netlease.libs.libs import RepeatingTask, Scheduler, measure_latency_decorator
from netlease.services.dhcp.lease_table import LeaseTable
from netlease.services.dhcp.metrics import DHCPStats, dhcp_metrics
from netlease.services.dhcp.models import (
    BROADCAST_IP,
    NO_IP_ASSIGNED,
    SERVER_PORT,
    ClientId,
    DHCPMessage,
    DHCPType,
    NetworkInterface,
)
from netlease.services.dhcp.utils import (
    find_interface_by_name,
    find_interface_for_network,
    list_ipv4_interfaces,
)
from netlease.services.logger.logger import MainLogger

DHCP_SERVER = config.get("dhcp").get("server")
LEASE_TIME = int(DHCP_SERVER.get("lease_time_seconds"))
RENEW_TIME = int(DHCP_SERVER.get("renew_time_seconds"))
REBIND_TIME = int(DHCP_SERVER.get("rebind_time_seconds"))
TICK_INTERVAL = float(DHCP_SERVER.get("tick_interval"))

dhcp_logger: Logger = MainLogger.get_logger(service_name="DHCP", log_level="debug")


def is_request_valid(dhcp_msg: DHCPMessage) -> bool:
    """A message needs a known type and a non null hardware address."""
    if not isinstance(dhcp_msg.dhcp_type, DHCPType):
        return False
    if not dhcp_msg.chaddr or ClientId(dhcp_msg.chaddr).is_null():
        return False
    return True


class DHCPServer:
    """DHCP server engine answering DISCOVER/REQUEST with OFFER/ACK/NAK.

    Dependencies:
        - transport: bind(), on_receive(), send_to(), close().
        - scheduler: schedule_repeating(interval, callback) returning a
          handle with cancel().

    Usage:
        server = DHCPServer(transport, Scheduler(),
                            pool_start="10.0.0.2", pool_end="10.0.0.254",
                            pool_mask="255.255.255.0")
        server.start()
        ...
        server.stop()

    Inbound handling and the expiry tick share the lease table and run
    under one lock.
    """

    def __init__(
        self,
        transport,
        scheduler: Scheduler,
        pool_start: IPv4Address | str,
        pool_end: IPv4Address | str,
        pool_mask: IPv4Address | str,
        lease_time: int = LEASE_TIME,
        renew_time: int = RENEW_TIME,
        rebind_time: int = REBIND_TIME,
        gateway: IPv4Address | str | None = None,
        static_leases: dict[ClientId, IPv4Address] | None = None,
        interfaces: list[NetworkInterface] | None = None,
        tick_interval: float = TICK_INTERVAL,
        logger: Logger = dhcp_logger,
    ):
        self._lock = RLock()
        self.transport = transport
        self.scheduler = scheduler
        self.pool_start = IPv4Address(pool_start)
        self.pool_end = IPv4Address(pool_end)
        self.pool_mask = IPv4Address(pool_mask)
        self.lease_time = int(lease_time)
        self.renew_time = int(renew_time)
        self.rebind_time = int(rebind_time)
        self.gateway = IPv4Address(gateway) if gateway else None
        self.tick_interval = tick_interval
        self.logger = logger
        self.stats = DHCPStats()

        self._interfaces = interfaces
        self._lease_table: LeaseTable | None = None
        self._tick_task: RepeatingTask | None = None
        self.own_address: IPv4Address = NO_IP_ASSIGNED
        self.running = False

        self.static_leases: dict[ClientId, IPv4Address] = {}
        for _client_id, _address in (static_leases or {}).items():
            self.add_static_entry(_client_id, _address)

    @property
    def pool_network(self) -> IPv4Network:
        return IPv4Network(f"{self.pool_start}/{self.pool_mask}", strict=False)

    @property
    def interfaces(self) -> list[NetworkInterface]:
        if self._interfaces is None:
            self._interfaces = list_ipv4_interfaces()
        return self._interfaces

    @property
    def lease_table(self) -> LeaseTable:
        if self._lease_table is None:
            raise RuntimeError("Not started.")
        return self._lease_table

    def start(self) -> None:
        """Build the lease table, bind the transport and start the expiry tick.

        Raises:
            RuntimeError: Already running.
            ConfigError: Invalid pool or no interface on the pool subnet.

        """
        with self._lock:
            if self.running:
                raise RuntimeError("DHCP server already running.")

            iface = find_interface_for_network(self.interfaces, self.pool_network)
            if iface is None:
                raise ConfigError(
                    f"DHCP server must run on the subnet it assigns, "
                    f"no interface in {self.pool_network}."
                )
            lease_table = LeaseTable(
                min_address=self.pool_start,
                max_address=self.pool_end,
                own_address=iface.address,
                lease_time=self.lease_time,
            )
            for _client_id, _address in self.static_leases.items():
                lease_table.add_static_entry(_client_id, _address)

            self.transport.bind(SERVER_PORT, allow_broadcast=True)
            self.own_address = iface.address
            self._lease_table = lease_table
            self.transport.on_receive(self.handle_message)
            self._tick_task = self.scheduler.schedule_repeating(
                self.tick_interval, self.tick
            )
            self.running = True
            self.logger.info(
                "Started on %s (%s), pool %s - %s, %s static.",
                iface.name,
                self.own_address,
                self.pool_start,
                self.pool_end,
                len(self.static_leases),
            )

    def stop(self) -> None:
        with self._lock:
            if not self.running:
                raise RuntimeError("Server not running.")
            if self._tick_task is not None:
                self._tick_task.cancel()
                self._tick_task = None
            self.transport.on_receive(None)
            self.transport.close()
            self.running = False
            self.logger.info(
                "Stopped %s, stats: %s, latency ms: %s.",
                self.__class__.__name__,
                self.stats.snapshot(),
                dhcp_metrics.get_stats(),
            )

    def add_static_entry(self, client_id: ClientId, address: IPv4Address | str) -> None:
        """Reserve address permanently for client_id.

        Before start the reservation is checked against the pool bounds and
        the other reservations, then applied when the lease table is built.

        Raises:
            RangeError: address outside [pool_start, pool_end].
            ConflictError: client or address already reserved or leased.

        """
        with self._lock:
            address = IPv4Address(address)
            if not self.pool_start <= address <= self.pool_end:
                raise RangeError(
                    f"Address {address} is not in [{self.pool_start}, {self.pool_end}]."
                )
            if client_id in self.static_leases:
                raise ConflictError(
                    f"Client {client_id} already reserves {self.static_leases[client_id]}."
                )
            for _owner, _reserved in self.static_leases.items():
                if _reserved == address:
                    raise ConflictError(f"Address {address} is already reserved by {_owner}.")

            if self._lease_table is not None:
                self._lease_table.add_static_entry(client_id, address)
            self.static_leases[client_id] = address

    def tick(self) -> None:
        with self._lock:
            if self._lease_table is None:
                return
            for _client_id in self._lease_table.tick():
                self.logger.info(
                    "Lease expired, chaddr: %s, IP: %s.",
                    _client_id,
                    self._lease_table.lookup(_client_id).address,
                )

    @measure_latency_decorator(metrics=dhcp_metrics)
    def handle_message(
        self,
        dhcp_msg: DHCPMessage,
        sender_address: IPv4Address,
        sender_port: int,
        interface: str | None = None,
    ) -> None:
        """Process an incoming DHCP message based on its DHCP type.

        Args:
            dhcp_msg (DHCPMessage): Parsed DHCP message.
            sender_address (IPv4Address): Source IP of the datagram.
            sender_port (int): Source UDP port of the datagram.
            interface (str): Name of the interface it arrived on.

        Behavior:
            - DISCOVER -> _handle_discover
            - REQUEST  -> _handle_request
            - anything else or malformed is dropped without reply.

        """
        with self._lock:
            try:
                self.stats.increment("received_total")
                if self._lease_table is None:
                    return

                if not is_request_valid(dhcp_msg):
                    self.stats.increment("received_malformed")
                    self.logger.debug("Dropped malformed message from %s.", sender_address)
                    return

                match dhcp_msg.dhcp_type:
                    case DHCPType.DISCOVER:
                        self.stats.increment("received_discover")
                        self._handle_discover(dhcp_msg, sender_address, sender_port, interface)
                    case DHCPType.REQUEST:
                        self.stats.increment("received_request")
                        self._handle_request(dhcp_msg, sender_address, sender_port, interface)
                    case _:
                        self.stats.increment("dropped_unsupported")
                        self.logger.debug(
                            "Dropped %s XID=%s.", dhcp_msg.dhcp_type.name, dhcp_msg.xid
                        )

            except Exception as err:
                self.logger.exception(
                    "%s error processing packet: %s.",
                    self.__class__.__name__,
                    err,
                )

    def _handle_discover(
        self,
        dhcp_msg: DHCPMessage,
        sender_address: IPv4Address,
        sender_port: int,
        interface: str | None,
    ) -> None:
        client_id = dhcp_msg.client_id
        self.logger.debug(
            "DISCOVER XID=%s, CHADDR=%s from %s:%s.",
            dhcp_msg.xid,
            client_id,
            sender_address,
            sender_port,
        )

        record = self.lease_table.lookup(client_id)
        if record is not None and not (record.is_expired or record.is_infinite):
            self.logger.debug(
                "%s sent DISCOVER with an active lease on %s.", client_id, record.address
            )

        offered_ip = self.lease_table.allocate(client_id)
        if offered_ip is None:
            self.stats.increment("exhausted")
            self.logger.warning("No available IP to offer to %s.", client_id)
            return

        offer = self._build_reply(DHCPType.OFFER, dhcp_msg, offered_ip, interface)
        offer.lease_time = self.lease_time
        offer.renew_time = self.renew_time
        offer.rebind_time = self.rebind_time
        offer.router = self.gateway

        self._send_response(offer, BROADCAST_IP, sender_port, interface)

    def _handle_request(
        self,
        dhcp_msg: DHCPMessage,
        sender_address: IPv4Address,
        sender_port: int,
        interface: str | None,
    ) -> None:
        client_id = dhcp_msg.client_id
        requested_ip = dhcp_msg.requested_address
        self.logger.debug(
            "REQUEST XID=%s, CHADDR=%s, IPreq=%s from %s:%s.",
            dhcp_msg.xid,
            client_id,
            requested_ip,
            sender_address,
            sender_port,
        )

        if not self.lease_table.in_range(requested_ip):
            self.stats.increment("dropped_out_of_range")
            self.logger.debug("Ignored REQUEST for %s outside the pool.", requested_ip)
            return

        leased_ip = self.lease_table.renew(client_id, requested_ip)
        if leased_ip is not None:
            response = self._build_reply(DHCPType.ACK, dhcp_msg, leased_ip, interface)
            response.lease_time = self.lease_time
            response.renew_time = self.renew_time
            response.rebind_time = self.rebind_time
            response.router = self.gateway
        else:
            self.logger.info("No lease for %s, NAK for %s.", client_id, requested_ip)
            response = self._build_reply(DHCPType.NAK, dhcp_msg, requested_ip, interface)

        # A client that already configured the address gets a unicast reply.
        if sender_address == requested_ip:
            self._send_response(response, sender_address, sender_port, interface)
        else:
            self._send_response(response, BROADCAST_IP, sender_port, interface)

    def _build_reply(
        self,
        dhcp_type: DHCPType,
        dhcp_msg: DHCPMessage,
        your_ip: IPv4Address,
        interface: str | None,
    ) -> DHCPMessage:
        """Reply skeleton, relay giaddr/mask are echoed untouched."""
        if dhcp_msg.is_relayed:
            giaddr = dhcp_msg.giaddr
            subnet_mask = (
                dhcp_msg.subnet_mask
                if dhcp_msg.subnet_mask != NO_IP_ASSIGNED
                else self.pool_mask
            )
        else:
            giaddr = NO_IP_ASSIGNED
            subnet_mask = self.pool_mask

        return DHCPMessage(
            dhcp_type=dhcp_type,
            xid=dhcp_msg.xid,
            chaddr=dhcp_msg.chaddr,
            yiaddr=your_ip,
            siaddr=self._select_source_address(interface),
            giaddr=giaddr,
            subnet_mask=subnet_mask,
            flags=dhcp_msg.flags,
        )

    def _select_source_address(self, interface: str | None) -> IPv4Address:
        """Address of the ingress interface, own address otherwise."""
        iface = find_interface_by_name(self.interfaces, interface)
        if iface is not None:
            return iface.address
        return self.own_address

    def _send_response(
        self,
        dhcp_msg: DHCPMessage,
        address: IPv4Address,
        port: int,
        interface: str | None,
    ) -> None:
        sent = self.transport.send_to(dhcp_msg, address, port, interface=interface)
        if sent is None or sent < 0:
            self.stats.increment("send_failed")
            self.logger.error(
                "Error while sending %s to %s:%s.", dhcp_msg.dhcp_type.name, address, port
            )
            return

        self.stats.increment("sent_total")
        self.stats.increment(f"sent_{dhcp_msg.dhcp_type.name.lower()}")
        self.logger.debug(
            "Sent %s XID=%s, CHADDR=%s, YIADDR=%s to %s:%s.",
            dhcp_msg.dhcp_type.name,
            dhcp_msg.xid,
            dhcp_msg.client_id,
            dhcp_msg.yiaddr,
            address,
            port,
        )
