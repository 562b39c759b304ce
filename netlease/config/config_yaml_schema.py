from ipaddress import IPv4Address
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class Meta(BaseModel):
    name: str
    version: str


class Libs(BaseModel):
    metrics_max_size: int = Field(gt=0)
    worker_join_timeout: float = Field(gt=0)


class DHCPServer(BaseModel):
    interfaces: List[str] = []
    pool_start: IPv4Address
    pool_end: IPv4Address
    pool_mask: IPv4Address
    lease_time_seconds: int = Field(gt=0)
    renew_time_seconds: int = Field(ge=0)
    rebind_time_seconds: int = Field(ge=0)
    tick_interval: float = Field(gt=0)
    gateway: Optional[IPv4Address] = None
    static_leases: Dict[str, IPv4Address] = {}


class RelaySubnet(BaseModel):
    gateway: IPv4Address
    mask: IPv4Address


class TransactionCache(BaseModel):
    size: int = Field(gt=0)
    ttl: float = Field(gt=0)


class DHCPRelay(BaseModel):
    server_ip: IPv4Address
    upstream_interface: str
    interfaces: List[RelaySubnet]
    transaction_cache: TransactionCache


class DHCPTransport(BaseModel):
    msg_size: int = Field(gt=0)
    poll_timeout: float = Field(gt=0)
    join_timeout: float = Field(gt=0)


class DHCP(BaseModel):
    mode: Literal["server", "relay"]
    server: DHCPServer
    relay: DHCPRelay
    transport: DHCPTransport


class ConfigSchema(BaseModel):
    meta: Meta
    libs: Libs
    dhcp: DHCP
    log_levels: Dict[str, str] = {}
    logging: Dict[str, Any]
