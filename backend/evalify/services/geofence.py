import ipaddress
import logging
from typing import Mapping, Optional, Sequence, Union

from evalify.models.quiz import Lab

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_PROXY_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def parse_origin(origin: Optional[str]) -> Optional[IPAddress]:
    """Parse a request origin, returning None when it is not an IP address"""
    if not origin:
        return None
    try:
        address = ipaddress.ip_address(origin.strip())
    except ValueError:
        return None
    # Clients reaching a dual-stack listener over IPv4 show up as ::ffff:a.b.c.d
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        return address.ipv4_mapped
    return address


def _in_subnet(address: IPAddress, subnet: str, lab: Lab) -> bool:
    try:
        network = ipaddress.ip_network(subnet.strip(), strict=False)
    except ValueError:
        logger.error("Lab %s has an invalid subnet %r", lab.id, subnet)
        return False
    return address.version == network.version and address in network


def is_in_assigned_subnet(
    assigned_labs: Sequence[Lab], network_origin: Optional[str]
) -> bool:
    """Check whether the origin falls inside any assigned lab subnet.

    No assigned labs means no restriction. A missing or unparseable origin never
    matches a geofenced quiz.
    """
    if not assigned_labs:
        return True

    address = parse_origin(network_origin)
    if address is None:
        return False

    return any(
        _in_subnet(address, subnet, lab)
        for lab in assigned_labs
        for subnet in lab.subnets
    )


def get_client_ip(
    headers: Mapping[str, str], peer: Optional[str] = None, trust_proxy: bool = True
) -> Optional[str]:
    """Extract the client address from proxy headers or the socket peer"""
    if trust_proxy:
        for header in _PROXY_HEADERS:
            value = headers.get(header)
            if value:
                # x-forwarded-for may carry a chain, the client is the first hop
                return value.split(",")[0].strip()
    return peer
