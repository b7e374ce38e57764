"""Target list file loader."""

import ipaddress
import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from fasttrace.dns import resolve_first
from fasttrace.models import AddressFamily, TargetDescriptor

logger = logging.getLogger(__name__)


def load_targets(
    path: Path | str,
    resolver: Callable[[str], str] = resolve_first,
) -> list[TargetDescriptor]:
    """Read a target list file.

    Each line holds ``<address-or-hostname> [label]``; see
    ``parse_targets`` for the rules.

    Args:
        path: UTF-8 text file.
        resolver: Hostname → first address of any family.

    Returns:
        Target descriptors in file order.

    Raises:
        OSError: If the file cannot be opened or read.
    """
    p = Path(path).expanduser()
    logger.debug("Loading targets from %s", p)
    with p.open(encoding="utf-8") as fh:
        return parse_targets(fh, resolver=resolver)


def parse_targets(
    lines: Iterable[str],
    resolver: Callable[[str], str] = resolve_first,
) -> list[TargetDescriptor]:
    """Parse target lines into descriptors, skipping bad records.

    A line is split on its first whitespace run.  The label is the rest of
    the line and defaults to the address text as written, never to a
    resolved address.  Blank lines and unresolvable hostnames are skipped
    with a warning.
    """
    targets: list[TargetDescriptor] = []
    for lineno, line in enumerate(lines, start=1):
        parts = line.rstrip().split(maxsplit=1)
        if not parts:
            logger.warning("Ignoring invalid line %d: %r", lineno, line.rstrip("\n"))
            continue

        raw = parts[0]
        label = parts[1] if len(parts) == 2 else raw

        try:
            address = str(ipaddress.ip_address(raw))
        except ValueError:
            try:
                address = resolver(raw)
            except (OSError, UnicodeError) as exc:
                logger.warning("Ignoring invalid IP %s on line %d: %s", raw, lineno, exc)
                continue

        targets.append(
            TargetDescriptor(address=address, label=label, family=AddressFamily.of(address))
        )

    logger.debug("Loaded %d target(s)", len(targets))
    return targets
