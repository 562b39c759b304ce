import select
import socket
from ipaddress import IPv4Address
from logging import Logger
from threading import RLock, Thread
from typing import Callable

from netlease.config.config import config
from netlease.services.dhcp.codec import decode_message, encode_message
from netlease.services.dhcp.models import DHCPMessage
from netlease.services.logger.logger import MainLogger

TRANSPORT_CONFIG = config.get("dhcp").get("transport")
MSG_SIZE = int(TRANSPORT_CONFIG.get("msg_size"))
POLL_TIMEOUT = float(TRANSPORT_CONFIG.get("poll_timeout"))
JOIN_TIMEOUT = float(TRANSPORT_CONFIG.get("join_timeout"))
SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)

ReceiveCallback = Callable[[DHCPMessage, IPv4Address, int, str], None]

transport_logger: Logger = MainLogger.get_logger(service_name="TRANSPORT")


class UDPTransport:
    """UDP datagram transport, one socket per network interface.

    Collaborator contract used by the DHCP engines:
        bind(port, allow_broadcast=True)
        on_receive(callback(message, sender_address, sender_port, interface))
        send_to(message, address, port, interface=None) -> bytes sent | -1
        close()

    Sockets are pinned to their interface (SO_BINDTODEVICE) so the ingress
    interface of every datagram is the interface of the socket it arrived on.
    """

    def __init__(
        self,
        interfaces: list[str],
        logger: Logger = transport_logger,
        msg_size: int = MSG_SIZE,
        poll_timeout: float = POLL_TIMEOUT,
    ):
        if not interfaces:
            raise ValueError("At least one interface is required.")
        self._interfaces = list(interfaces)
        self._logger = logger
        self._msg_size = msg_size
        self._poll_timeout = poll_timeout
        self._lock = RLock()
        self._sockets: dict[str, socket.socket] = {}
        self._callback: ReceiveCallback | None = None
        self._running = False
        self._worker: Thread | None = None

    @property
    def interfaces(self) -> list[str]:
        return list(self._interfaces)

    def bind(self, port: int, allow_broadcast: bool = True) -> None:
        with self._lock:
            if self._sockets:
                raise RuntimeError("Transport already bound.")
            for _iface in self._interfaces:
                _sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                _sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                if allow_broadcast:
                    _sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                _sock.setsockopt(socket.SOL_SOCKET, SO_BINDTODEVICE, _iface.encode())
                _sock.setblocking(False)
                _sock.bind(("0.0.0.0", port))
                self._sockets[_iface] = _sock

            self._running = True
            self._worker = Thread(
                target=self._listen, name=f"udp-listener-{port}", daemon=True
            )
            self._worker.start()
            self._logger.info("Bound port %s on %s.", port, ", ".join(self._interfaces))

    def on_receive(self, callback: ReceiveCallback | None) -> None:
        with self._lock:
            self._callback = callback

    def send_to(
        self,
        message: DHCPMessage,
        address: IPv4Address,
        port: int,
        interface: str | None = None,
    ) -> int:
        """Encode and send message, returns bytes sent or -1 on failure."""
        with self._lock:
            _sock = self._sockets.get(interface or self._interfaces[0])
            if _sock is None:
                self._logger.error("No socket bound on interface %s.", interface)
                return -1
            try:
                return _sock.sendto(encode_message(message), (str(address), port))
            except OSError as err:
                self._logger.error(
                    "Failed to send %s to %s:%s: %s.",
                    message.dhcp_type.name,
                    address,
                    port,
                    err,
                )
                return -1

    def close(self, join_timeout: float = JOIN_TIMEOUT) -> None:
        with self._lock:
            self._running = False
            self._callback = None
        if self._worker and self._worker.is_alive():
            self._worker.join(timeout=join_timeout)
        with self._lock:
            for _sock in self._sockets.values():
                _sock.close()
            self._sockets.clear()
            self._worker = None

    def _listen(self) -> None:
        while self._running:
            try:
                _readable, _, _ = select.select(
                    list(self._sockets.values()), [], [], self._poll_timeout
                )
            except (OSError, ValueError):
                return

            for _sock in _readable:
                try:
                    _data, (_ip, _port) = _sock.recvfrom(self._msg_size)
                except OSError:
                    continue
                self._dispatch(_sock, _data, IPv4Address(_ip), _port)

    def _dispatch(
        self, sock: socket.socket, data: bytes, sender: IPv4Address, port: int
    ) -> None:
        message = decode_message(data)
        if message is None:
            self._logger.debug("Dropped undecodable datagram from %s:%s.", sender, port)
            return

        interface = next(
            (_name for _name, _sock in self._sockets.items() if _sock is sock), None
        )
        callback = self._callback
        if callback is None or interface is None:
            return
        try:
            callback(message, sender, port, interface)
        except Exception as err:
            self._logger.exception("Receive callback failed: %s.", err)
