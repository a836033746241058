import pytest

from collector import geo
from collector.app import app as flask_app

LOCATION = {
    "country": "Netherlands",
    "countryCode": "NL",
    "region": "North Holland",
    "city": "Amsterdam",
    "latitude": "52.3676",
    "longitude": "4.9041",
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    flask_app.config.update(
        TESTING=True,
        DB_PATH=str(tmp_path / "analytics.sqlite3"),
        GEOIP_DB_PATH=None,
        GEOIP_API_URL="https://geo.test/json/{ip}",
    )
    monkeypatch.setattr(geo, "geoip_reader", None)
    return flask_app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def fake_location(monkeypatch):
    calls = []

    def lookup(ip):
        calls.append(ip)
        return dict(LOCATION)

    monkeypatch.setattr("collector.app.lookup_location", lookup)
    return calls


@pytest.fixture()
def website(client):
    resp = client.post("/websites", json={"name": "Acme", "domain": "acme.com"})
    assert resp.status_code == 201
    return resp.get_json()


@pytest.fixture()
def make_event(website):
    def make(url="/home", event_type="pageview", page="https://acme.com/", **payload):
        if event_type == "pageview":
            p = {"url": url, "referrer": "", "userAgent": "ua", "timestamp": 1700000000000}
        else:
            p = {"u": url, "r": ""}
        p.update(payload)
        return {"id": website["apiKey"], "u": page, "e": {"t": event_type, "p": p}}

    return make
