"""Target catalog: carrier reference endpoints grouped by location."""

import logging
from collections.abc import Callable, Iterable
from pathlib import Path

import yaml

from fasttrace.dns import resolve_first
from fasttrace.models import AddressFamily, ISPEndpoint, LocationGroup, TargetDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "catalog.yaml"

# Selection groups accepted by ``TargetCatalog.select``.
GROUPS = ("fast", "telecom", "unicom", "mobile", "education", "all")


class TargetCatalog:
    """Read-only registry of reference endpoints.

    Built once from an ordered table of location → endpoints.  Every
    selection preserves the declared order of the table.

    Args:
        locations: Locations in declared order.
        carriers: Carrier groups in the order ``select("all")`` visits them.
        fast: ``(location_key, endpoint_key)`` pairs of the fast subset.
    """

    def __init__(
        self,
        locations: Iterable[LocationGroup],
        carriers: Iterable[str],
        fast: Iterable[tuple[str, str]] = (),
    ) -> None:
        self._locations = tuple(locations)
        self._carriers = tuple(carriers)
        index = {(ep.location_key, ep.key): ep for ep in self.all()}
        try:
            self._fast = tuple(index[ref] for ref in fast)
        except KeyError as exc:
            raise ValueError(f"Fast subset references unknown endpoint {exc.args[0]}") from None

    @classmethod
    def load(cls, path: Path | str | None = None) -> "TargetCatalog":
        """Load the catalog table from YAML.

        Args:
            path: Catalog file; defaults to the packaged ``catalog.yaml``.

        Raises:
            ValueError: If the table is structurally invalid.
        """
        source = Path(path) if path is not None else DEFAULT_CATALOG_PATH
        raw = yaml.safe_load(source.read_text(encoding="utf-8"))
        if not isinstance(raw, dict) or "locations" not in raw:
            raise ValueError(f"Catalog {source} must be a mapping with 'locations'")

        locations = []
        for loc in raw["locations"]:
            endpoints = tuple(
                ISPEndpoint(
                    location_key=loc["key"],
                    location=loc["name"],
                    carrier=ep["carrier"],
                    name=ep["name"],
                    key=ep["key"],
                    ipv4=ep.get("ipv4"),
                    ipv6=ep.get("ipv6"),
                )
                for ep in loc.get("endpoints", [])
            )
            locations.append(LocationGroup(key=loc["key"], name=loc["name"], endpoints=endpoints))

        fast = [tuple(ref.split("/", 1)) for ref in raw.get("fast", [])]
        carriers = raw.get("carriers") or sorted(
            {ep.carrier for g in locations for ep in g.endpoints}
        )
        logger.debug("Loaded catalog %s: %d locations", source, len(locations))
        return cls(locations, carriers, fast)

    def all(self) -> tuple[ISPEndpoint, ...]:
        """Every endpoint, location by location, in declared order."""
        return tuple(ep for group in self._locations for ep in group.endpoints)

    def locations(self) -> tuple[LocationGroup, ...]:
        return self._locations

    def carriers(self) -> tuple[str, ...]:
        return self._carriers

    def by_carrier(self, carrier: str) -> tuple[ISPEndpoint, ...]:
        """Endpoints of one carrier group in declared order.

        Raises:
            ValueError: If *carrier* is not a known group.
        """
        if carrier not in self._carriers:
            known = ", ".join(self._carriers)
            raise ValueError(f"Unknown carrier {carrier!r}. Known carriers: {known}")
        return tuple(ep for ep in self.all() if ep.carrier == carrier)

    def fast_subset(self) -> tuple[ISPEndpoint, ...]:
        """One representative endpoint per carrier at the reference location."""
        return self._fast

    def by_location_set(self, keys: Iterable[str]) -> tuple[ISPEndpoint, ...]:
        """Endpoints of the given locations, in catalog order.

        Raises:
            ValueError: If any key is not a known location.
        """
        wanted = set(keys)
        known = {group.key for group in self._locations}
        unknown = wanted - known
        if unknown:
            raise ValueError(
                f"Unknown location(s) {', '.join(sorted(unknown))}. "
                f"Known locations: {', '.join(g.key for g in self._locations)}"
            )
        return tuple(ep for ep in self.all() if ep.location_key in wanted)

    def select(self, group: str) -> tuple[ISPEndpoint, ...]:
        """Resolve a selection group name to endpoints.

        ``all`` visits carrier groups one after another rather than the
        table location by location.

        Raises:
            ValueError: If *group* is not one of ``GROUPS``.
        """
        if group == "fast":
            return self.fast_subset()
        if group == "all":
            return tuple(ep for carrier in self._carriers for ep in self.by_carrier(carrier))
        if group in GROUPS:
            return self.by_carrier(group)
        raise ValueError(f"Unknown group {group!r}. Known groups: {', '.join(GROUPS)}")


def catalog_targets(
    endpoints: Iterable[ISPEndpoint],
    family: AddressFamily,
    resolver: Callable[[str, AddressFamily], str] = resolve_first,
) -> list[TargetDescriptor]:
    """Turn catalog endpoints into target descriptors for *family*.

    Endpoints without a host for the family, or whose host does not
    resolve, are skipped with a warning.
    """
    targets: list[TargetDescriptor] = []
    for ep in endpoints:
        label = f"{ep.location} {ep.name}"
        host = ep.host_for(family)
        if not host:
            logger.warning("No IPv%s endpoint for %s; skipping", family.value, label)
            continue
        try:
            address = resolver(host, family)
        except OSError as exc:
            logger.warning("Could not resolve %s (%s): %s; skipping", label, host, exc)
            continue
        targets.append(TargetDescriptor(address=address, label=label, family=family))
    return targets
