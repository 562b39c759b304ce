from ipaddress import IPv4Address
from logging import Logger
from signal import SIGABRT, SIGINT, SIGQUIT, SIGTERM, signal
from threading import Event

from netlease.config.config import config
from netlease.libs.errors import ConfigError
from netlease.libs.libs import Scheduler
from netlease.services.dhcp.models import ClientId, RelayInterfaceEntry
from netlease.services.dhcp.relay import DHCPRelay
from netlease.services.dhcp.server import DHCPServer
from netlease.services.dhcp.transport import UDPTransport
from netlease.services.dhcp.utils import list_ipv4_interfaces
from netlease.services.logger.logger import MainLogger

logger: Logger = MainLogger.get_logger(service_name="MAIN")
shutdown_event = Event()


def shutdown_handler(signum: int, frame):
    """Handles app shutdown calls.

    Args:
        signum (int): The signal number received.
        frame (frame object): Current stack frame.

    """
    logger.debug("Received %s.", signum)
    shutdown_event.set()


def register_shutdowns():
    """Registers shutdown handler for common interrupt signals"""
    signal(SIGINT, shutdown_handler)
    signal(SIGTERM, shutdown_handler)
    signal(SIGQUIT, shutdown_handler)
    signal(SIGABRT, shutdown_handler)


def build_server(dhcp_config: dict) -> DHCPServer:
    server_config = dhcp_config.get("server")
    interfaces = list_ipv4_interfaces(server_config.get("interfaces"))
    if not interfaces:
        raise ConfigError("No IPv4 interface to serve DHCP on.")
    return DHCPServer(
        transport=UDPTransport(sorted({_iface.name for _iface in interfaces})),
        scheduler=Scheduler(),
        pool_start=server_config.get("pool_start"),
        pool_end=server_config.get("pool_end"),
        pool_mask=server_config.get("pool_mask"),
        lease_time=int(server_config.get("lease_time_seconds")),
        renew_time=int(server_config.get("renew_time_seconds")),
        rebind_time=int(server_config.get("rebind_time_seconds")),
        gateway=server_config.get("gateway"),
        static_leases={
            ClientId.from_mac(_mac): IPv4Address(_ip)
            for _mac, _ip in server_config.get("static_leases").items()
        },
        interfaces=interfaces,
        tick_interval=float(server_config.get("tick_interval")),
    )


def build_relay(dhcp_config: dict) -> DHCPRelay:
    relay_config = dhcp_config.get("relay")
    entries = [
        RelayInterfaceEntry(
            gateway=IPv4Address(_subnet.get("gateway")),
            mask=IPv4Address(_subnet.get("mask")),
        )
        for _subnet in relay_config.get("interfaces")
    ]
    interfaces = list_ipv4_interfaces()
    client_ifaces = sorted(
        {_iface.name for _iface in interfaces for _entry in entries if _iface.address == _entry.gateway}
    )
    if not client_ifaces:
        raise ConfigError("No local interface holds a relay gateway address.")
    return DHCPRelay(
        client_transport=UDPTransport(client_ifaces),
        server_transport=UDPTransport([relay_config.get("upstream_interface")]),
        server_address=relay_config.get("server_ip"),
        relay_interfaces=entries,
        interfaces=interfaces,
    )


def main():
    dhcp_config = config.get("dhcp")
    mode = dhcp_config.get("mode")

    logger.info("Starting DHCP %s", mode)
    register_shutdowns()

    service = build_server(dhcp_config) if mode == "server" else build_relay(dhcp_config)
    service.start()

    logger.info("Services Started")
    shutdown_event.wait()
    logger.info("Stopping services.")

    service.stop()
    logger.info("Shutdown complete.")


if __name__ == "__main__":
    main()
