"""Geolocation session backed by MaxMind GeoLite2 databases."""

import logging

import geoip2.database
import geoip2.errors

from fasttrace.config import FastTraceConfig
from fasttrace.models import GeoInfo

logger = logging.getLogger(__name__)


class GeoSession:
    """Long-lived geolocation session shared by every target of a batch.

    The session is tolerant of missing database files: if a path is
    ``None`` or points to a non-existent file, the corresponding part of a
    lookup is simply empty.

    Args:
        city_db_path: Path to ``GeoLite2-City.mmdb``, or ``None``.
        asn_db_path: Path to ``GeoLite2-ASN.mmdb``, or ``None``.
        locales: Preferred name locales, most preferred first.
    """

    def __init__(
        self,
        city_db_path: str | None = None,
        asn_db_path: str | None = None,
        locales: list[str] | None = None,
    ) -> None:
        self._city_reader: geoip2.database.Reader | None = None
        self._asn_reader: geoip2.database.Reader | None = None
        self._cache: dict[str, GeoInfo | None] = {}

        if city_db_path:
            try:
                self._city_reader = geoip2.database.Reader(city_db_path, locales=locales)
                logger.debug("Opened GeoLite2-City DB: %s", city_db_path)
            except FileNotFoundError:
                logger.warning(
                    "GeoLite2-City DB not found at %s; city/country enrichment disabled",
                    city_db_path,
                )

        if asn_db_path:
            try:
                self._asn_reader = geoip2.database.Reader(asn_db_path)
                logger.debug("Opened GeoLite2-ASN DB: %s", asn_db_path)
            except FileNotFoundError:
                logger.warning(
                    "GeoLite2-ASN DB not found at %s; ASN enrichment disabled",
                    asn_db_path,
                )

    @property
    def enabled(self) -> bool:
        return self._city_reader is not None or self._asn_reader is not None

    def close(self) -> None:
        """Close underlying database readers."""
        if self._city_reader:
            self._city_reader.close()
            self._city_reader = None
        if self._asn_reader:
            self._asn_reader.close()
            self._asn_reader = None
        self._cache.clear()

    def lookup(self, ip: str) -> GeoInfo | None:
        """Look up location and ASN data for a hop address.

        Results are cached for the lifetime of the session since the same
        backbone hops show up across many targets.

        Returns:
            A ``GeoInfo``, or ``None`` if neither database knows the address.
        """
        if ip in self._cache:
            return self._cache[ip]

        city = self._lookup_city(ip)
        asn = self._lookup_asn(ip)
        info = None
        if city or asn:
            info = GeoInfo(**(city or {}), **(asn or {}))
        self._cache[ip] = info
        return info

    def _lookup_city(self, ip: str) -> dict | None:
        if not self._city_reader:
            return None
        try:
            resp = self._city_reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug("City lookup failed for %s", ip)
            return None

        return {
            "city": resp.city.name,
            "country": resp.country.name,
            "country_code": resp.country.iso_code,
        }

    def _lookup_asn(self, ip: str) -> dict | None:
        if not self._asn_reader:
            return None
        try:
            resp = self._asn_reader.asn(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug("ASN lookup failed for %s", ip)
            return None

        return {
            "asn": resp.autonomous_system_number,
            "asn_org": resp.autonomous_system_organization,
        }


def open_geo_session(config: FastTraceConfig) -> GeoSession:
    """Open the batch's geolocation session from configuration."""
    return GeoSession(
        city_db_path=config.maxmind_city_db,
        asn_db_path=config.maxmind_asn_db,
        locales=[config.lang, "en"] if config.lang != "en" else ["en"],
    )
