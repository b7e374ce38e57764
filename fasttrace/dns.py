"""DNS resolution helpers for target materialization."""

import logging
import socket

from fasttrace.models import AddressFamily

logger = logging.getLogger(__name__)

_SOCKET_FAMILY = {
    None: socket.AF_UNSPEC,
    AddressFamily.V4: socket.AF_INET,
    AddressFamily.V6: socket.AF_INET6,
}


def resolve_all(
    hostname: str,
    port: int = 0,
    family: AddressFamily | None = None,
) -> list[tuple[str, int]]:
    """Resolve a hostname to its A and/or AAAA records.

    Wraps ``socket.getaddrinfo`` to return deduplicated ``(ip, port)``
    pairs in resolver order.

    Args:
        hostname: The hostname to resolve (e.g.
            ``"ipv4.pek-4134.endpoint.nxtrace.org"``).
        port: Service port to pass to ``getaddrinfo``.  Defaults to ``0``
            (any port).
        family: Restrict results to one address family; ``None`` means
            any family.

    Returns:
        A deduplicated list of ``(ip, port)`` tuples.

    Raises:
        socket.gaierror: If DNS resolution fails entirely.
    """
    logger.debug("Resolving %s (port=%d, family=%s)", hostname, port, family)

    results = socket.getaddrinfo(
        hostname,
        port,
        family=_SOCKET_FAMILY[family],
        type=socket.SOCK_STREAM,
    )

    seen: set[tuple[str, int]] = set()
    out: list[tuple[str, int]] = []
    for _family, _type, _proto, _canonname, sockaddr in results:
        # sockaddr is (ip, port) for AF_INET, (ip, port, flow, scope) for AF_INET6
        key = (sockaddr[0], sockaddr[1])
        if key not in seen:
            seen.add(key)
            out.append(key)

    logger.debug("Resolved %s → %d unique address(es)", hostname, len(out))
    return out


def resolve_first(hostname: str, family: AddressFamily | None = None) -> str:
    """Return the first address *hostname* resolves to.

    Raises:
        socket.gaierror: If resolution fails or yields no address.
    """
    addresses = resolve_all(hostname, family=family)
    if not addresses:
        raise socket.gaierror(socket.EAI_NONAME, f"No addresses found for {hostname}")
    return addresses[0][0]
