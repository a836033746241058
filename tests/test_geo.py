import geoip2.errors
import pytest
import requests

from collector import geo
from collector.errors import GeolocationUnavailable


class FakeResponse:
    def __init__(self, status_code=200, data=None, raises=False):
        self.status_code = status_code
        self.ok = 200 <= status_code < 400
        self._data = data
        self._raises = raises

    def json(self):
        if self._raises:
            raise ValueError("No JSON object could be decoded")
        return self._data


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture()
def respond(monkeypatch):
    calls = []

    def install(response):
        def get(url, timeout=None):
            calls.append((url, timeout))
            if isinstance(response, Exception):
                raise response
            return response

        monkeypatch.setattr(geo.requests, "get", get)
        return calls

    return install


def test_http_lookup(ctx, respond):
    calls = respond(
        FakeResponse(
            data={
                "status": "success",
                "country": "Netherlands",
                "countryCode": "NL",
                "regionName": "North Holland",
                "region": "NH",
                "city": "Amsterdam",
                "lat": 52.3676,
                "lon": 4.9041,
                "isp": "ignored",
            }
        )
    )
    assert geo.lookup_location("203.0.113.7") == {
        "country": "Netherlands",
        "countryCode": "NL",
        "region": "North Holland",
        "city": "Amsterdam",
        "latitude": "52.3676",
        "longitude": "4.9041",
    }
    assert calls == [("https://geo.test/json/203.0.113.7", 5.0)]


def test_http_lookup_partial(ctx, respond):
    respond(FakeResponse(data={"country": "Iceland"}))
    location = geo.lookup_location("203.0.113.7")
    assert location["country"] == "Iceland"
    assert location["city"] is None
    assert location["latitude"] is None


@pytest.mark.parametrize(
    "response",
    [
        requests.ConnectionError("refused"),
        requests.Timeout("slow"),
        FakeResponse(status_code=503),
        FakeResponse(raises=True),
        FakeResponse(data=["not", "a", "dict"]),
        FakeResponse(data={"status": "fail", "message": "private range"}),
    ],
)
def test_http_lookup_failures(ctx, respond, response):
    respond(response)
    with pytest.raises(GeolocationUnavailable):
        geo.lookup_location("10.0.0.1")


def test_empty_location():
    assert geo.empty_location() == dict.fromkeys(geo.LOCATION_FIELDS)


class FakeReader:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error

    def city(self, ip):
        if self.error:
            raise self.error
        return self.response


def test_maxmind_used_when_reader_available(ctx, monkeypatch, respond):
    calls = respond(requests.ConnectionError("should not be called"))
    monkeypatch.setattr(geo, "geoip_reader", FakeReader(error=ValueError("bad ip")))
    with pytest.raises(GeolocationUnavailable):
        geo.lookup_location("not-an-ip")
    assert calls == []


def test_missing_maxmind_db_falls_back_to_http(app, ctx, respond, tmp_path):
    app.config["GEOIP_DB_PATH"] = str(tmp_path / "missing.mmdb")
    respond(FakeResponse(data={"country": "Iceland"}))
    assert geo.lookup_location("203.0.113.7")["country"] == "Iceland"


def test_maxmind_lookup(ctx, monkeypatch):
    from types import SimpleNamespace as NS

    response = NS(
        country=NS(name="Netherlands", iso_code="NL"),
        subdivisions=NS(most_specific=NS(name="North Holland")),
        city=NS(name="Amsterdam"),
        location=NS(latitude=52.3676, longitude=4.9041),
    )
    monkeypatch.setattr(geo, "geoip_reader", FakeReader(response=response))
    assert geo.lookup_location("203.0.113.7") == {
        "country": "Netherlands",
        "countryCode": "NL",
        "region": "North Holland",
        "city": "Amsterdam",
        "latitude": "52.3676",
        "longitude": "4.9041",
    }


def test_corrupt_maxmind_db_falls_back_to_http(app, ctx, respond, tmp_path):
    corrupt = tmp_path / "GeoLite2-City.mmdb"
    corrupt.write_bytes(b"not a maxmind database")
    app.config["GEOIP_DB_PATH"] = str(corrupt)
    respond(FakeResponse(data={"country": "Iceland"}))

    assert geo.lookup_location("203.0.113.7")["country"] == "Iceland"
    assert geo.geoip_reader is None


@pytest.mark.parametrize(
    "error",
    [
        TypeError("The city method cannot be used with the GeoLite2-Country database"),
        geoip2.errors.GeoIP2Error("lookup failed"),
        geoip2.errors.AddressNotFoundError("The address 10.0.0.1 is not in the database."),
    ],
)
def test_maxmind_lookup_errors(ctx, monkeypatch, error):
    monkeypatch.setattr(geo, "geoip_reader", FakeReader(error=error))
    with pytest.raises(GeolocationUnavailable):
        geo.lookup_location("10.0.0.1")
