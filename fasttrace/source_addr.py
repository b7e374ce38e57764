"""Outgoing source-address selection for a network interface."""

import ipaddress
import logging
import socket

import psutil

from fasttrace.models import AddressFamily

logger = logging.getLogger(__name__)

_LINK_LOCAL_MULTICAST = (
    ipaddress.ip_network("224.0.0.0/24"),
    ipaddress.ip_network("ff02::/16"),
)


def is_public(address: str) -> bool:
    """Return True unless *address* is private, loopback or link-local.

    Link-local covers both unicast and multicast scopes.
    """
    ip = ipaddress.ip_address(address)
    if ip.is_private or ip.is_loopback or ip.is_link_local:
        return False
    return not any(ip in net for net in _LINK_LOCAL_MULTICAST if net.version == ip.version)


def interface_addresses(interface: str, family: AddressFamily) -> list[str]:
    """List addresses of *family* bound to *interface*, in enumeration order.

    IPv6 zone suffixes (``fe80::1%eth0``) are stripped.

    Raises:
        KeyError: If the interface does not exist.
    """
    wanted = socket.AF_INET if family is AddressFamily.V4 else socket.AF_INET6
    addrs = psutil.net_if_addrs()[interface]
    return [a.address.split("%", 1)[0] for a in addrs if a.family == wanted]


def select_source_address(interface: str | None, family: AddressFamily) -> str | None:
    """Pick an outgoing source address for probes.

    Prefers the first public address of *family* on *interface*.  If the
    interface only carries private, loopback or link-local addresses of
    that family, the first of them is returned instead.

    Args:
        interface: Interface name (e.g. ``"eth0"``); ``None`` or empty
            lets the kernel's routing pick the source.
        family: Address family of the destination.

    Returns:
        A literal address, or ``None`` when nothing could be selected.
    """
    if not interface:
        return None

    try:
        candidates = interface_addresses(interface, family)
    except KeyError:
        logger.warning("Interface %s not found; using default source address", interface)
        return None
    except OSError as exc:
        logger.warning("Could not list addresses of %s: %s", interface, exc)
        return None

    if not candidates:
        logger.debug("No IPv%s address on %s", family.value, interface)
        return None

    for address in candidates:
        try:
            if is_public(address):
                logger.debug("Selected public source %s on %s", address, interface)
                return address
        except ValueError:
            logger.debug("Skipping unparsable address %r on %s", address, interface)

    logger.debug("No public IPv%s address on %s; using %s", family.value, interface, candidates[0])
    return candidates[0]
