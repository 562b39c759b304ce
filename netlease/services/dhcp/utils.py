from ipaddress import IPv4Address, IPv4Network
from socket import AF_INET

from psutil import net_if_addrs

from netlease.services.dhcp.models import NetworkInterface, RelayInterfaceEntry


def list_ipv4_interfaces(names: list[str] | None = None) -> list[NetworkInterface]:
    """Enumerate local IPv4 interface addresses.

    Args:
        names: Restrict to these interface names, all when empty or None.

    """
    interfaces = []
    for _name, _addresses in net_if_addrs().items():
        if names and _name not in names:
            continue
        for _address in _addresses:
            if _address.family != AF_INET or not _address.netmask:
                continue
            interfaces.append(
                NetworkInterface(
                    name=_name,
                    address=IPv4Address(_address.address),
                    netmask=IPv4Address(_address.netmask),
                )
            )
    return interfaces


def find_interface_for_network(
    interfaces: list[NetworkInterface], network: IPv4Network
) -> NetworkInterface | None:
    """First interface with an address inside network."""
    for _iface in interfaces:
        if is_ip_in_subnet(_iface.address, network):
            return _iface
    return None


def find_interface_by_name(
    interfaces: list[NetworkInterface], name: str | None
) -> NetworkInterface | None:
    for _iface in interfaces:
        if _iface.name == name:
            return _iface
    return None


def find_relay_entry_for_interface(
    entries: list[RelayInterfaceEntry], iface: NetworkInterface | None
) -> RelayInterfaceEntry | None:
    """Relay entry whose gateway is the interface address or whose subnet holds it."""
    if iface is None:
        return None
    for _entry in entries:
        if _entry.gateway == iface.address:
            return _entry
    for _entry in entries:
        if is_ip_in_subnet(iface.address, _entry.network):
            return _entry
    return None


def is_ip_in_subnet(ip_to_validate: IPv4Address | None, subnet: IPv4Network) -> bool:
    """Checks if an IP address is in the specified subnet."""
    if ip_to_validate is None:
        return False
    return IPv4Address(ip_to_validate) in subnet
