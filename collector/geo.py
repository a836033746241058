import logging
import os

import geoip2.database
import geoip2.errors
import maxminddb
import requests
from flask import current_app

from collector.errors import GeolocationUnavailable

logger = logging.getLogger(__name__)

LOCATION_FIELDS = ("country", "countryCode", "region", "city", "latitude", "longitude")

geoip_reader = None


def get_geoip_reader():
    """
    Lazily open the local MaxMind City database, if one is configured.
    """
    global geoip_reader
    if geoip_reader is None:
        path = current_app.config.get("GEOIP_DB_PATH")
        if path and os.path.exists(path):
            try:
                geoip_reader = geoip2.database.Reader(path)
            except (maxminddb.InvalidDatabaseError, OSError, ValueError) as e:
                logger.warning("Cannot open GeoIP database %s, using HTTP lookup: %s", path, e)
    return geoip_reader


def empty_location() -> dict:
    return dict.fromkeys(LOCATION_FIELDS)


def _as_text(value):
    return None if value is None else str(value)


def lookup_location_maxmind(reader, ip: str) -> dict:
    # TypeError: the configured database is not a City database
    try:
        resp = reader.city(ip)
    except (geoip2.errors.GeoIP2Error, TypeError, ValueError) as e:
        raise GeolocationUnavailable(f"No location for {ip}: {e}") from e

    region = resp.subdivisions.most_specific.name if resp.subdivisions else None
    return {
        "country": resp.country.name,
        "countryCode": resp.country.iso_code,
        "region": region,
        "city": resp.city.name,
        "latitude": _as_text(resp.location.latitude),
        "longitude": _as_text(resp.location.longitude),
    }


def lookup_location_http(ip: str) -> dict:
    """
    Query an ip-api compatible JSON endpoint.

    Consumed fields: country, countryCode, regionName, city, lat, lon.
    Any of them may be absent.
    """
    url = current_app.config["GEOIP_API_URL"].format(ip=ip)
    try:
        resp = requests.get(url, timeout=current_app.config["GEOIP_TIMEOUT"])
    except requests.RequestException as e:
        raise GeolocationUnavailable(f"Geolocation request failed: {e}") from e

    if not resp.ok:
        raise GeolocationUnavailable(
            f"Geolocation API responded with status: {resp.status_code}"
        )
    try:
        data = resp.json()
    except ValueError as e:
        raise GeolocationUnavailable("Geolocation API returned invalid JSON") from e
    if not isinstance(data, dict):
        raise GeolocationUnavailable("Geolocation API returned invalid JSON")

    # ip-api answers 200 with status=fail for private/reserved ranges
    if data.get("status") == "fail":
        raise GeolocationUnavailable(
            f"Geolocation API could not resolve {ip}: {data.get('message')}"
        )

    return {
        "country": data.get("country"),
        "countryCode": data.get("countryCode"),
        "region": data.get("regionName"),
        "city": data.get("city"),
        "latitude": _as_text(data.get("lat")),
        "longitude": _as_text(data.get("lon")),
    }


def lookup_location(ip: str) -> dict:
    """
    Resolve an IP to a location dict with the keys in LOCATION_FIELDS.
    Raises GeolocationUnavailable on any failure.
    """
    reader = get_geoip_reader()
    if reader is not None:
        return lookup_location_maxmind(reader, ip)
    return lookup_location_http(ip)
