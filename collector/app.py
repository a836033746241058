import ipaddress
import json
import logging
import os

import click
from flask import Flask, request, jsonify

from collector import db as store
from collector.errors import GeolocationUnavailable, NotFoundError, ValidationError
from collector.events import parse_event
from collector.geo import empty_location, lookup_location

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logger = logging.getLogger(__name__)

app = Flask(__name__, static_folder="public", static_url_path="/public")
app.config.update(
    DB_PATH=os.environ.get("ANALYTICS_DB", "analytics.sqlite3"),
    GEOIP_DB_PATH=os.environ.get("GEOIP_DB_PATH", "/geoip/GeoLite2-City.mmdb"),
    GEOIP_API_URL=os.environ.get("GEOIP_API_URL", "https://ip-api.com/json/{ip}"),
    GEOIP_TIMEOUT=float(os.environ.get("GEOIP_TIMEOUT", "5")),
    # "*" accepts any origin, the beacon is embedded on third-party sites
    CORS_ALLOW_ORIGINS=[
        o.strip()
        for o in os.environ.get("CORS_ALLOW_ORIGINS", "*").split(",")
        if o.strip()
    ],
)

UNKNOWN_IP = "unknown"
IP_HEADERS = ("X-Forwarded-For", "CF-Connecting-IP", "X-Real-IP")


# -----------------------------------------------------------------------------
# DB lifecycle
# -----------------------------------------------------------------------------
app.teardown_appcontext(store.close_db)


@app.before_request
def before():
    store.ensure_schema(store.get_db())


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------
def log_request(method, endpoint, data, result, error=None):
    status = "ERROR" if error else "SUCCESS"
    logger.info("%s %s - %s", method, endpoint, status)
    logger.info("Request: %s", json.dumps(data, indent=2, default=str))
    if error is None:
        logger.info("Response: %s", json.dumps(result, indent=2, default=str))
    elif isinstance(error, BaseException):
        logger.error("Error: %s", error, exc_info=error)
    else:
        logger.error("Error: %s", error)


def client_ip(req) -> str:
    """
    First proxy header holding a valid IP address. X-Forwarded-For may
    hold a chain ("client, proxy1, proxy2"); only the client is kept.
    """
    for header in IP_HEADERS:
        value = req.headers.get(header, "").split(",")[0].strip()
        if not value:
            continue
        try:
            return str(ipaddress.ip_address(value))
        except ValueError:
            logger.warning("Ignoring invalid %s header: %r", header, value)
    return UNKNOWN_IP


def resolve_location(ip: str) -> dict:
    if ip == UNKNOWN_IP:
        logger.warning("IP address unknown - location data may be limited")
        return empty_location()
    try:
        return lookup_location(ip)
    except GeolocationUnavailable as e:
        logger.warning("Failed to fetch location data: %s", e)
        return empty_location()


def pick_cors_origin(request_origin: str | None) -> str | None:
    """
    Return allowed origin if it matches our allowlist.
    """
    if not request_origin:
        return None
    for allowed in app.config["CORS_ALLOW_ORIGINS"]:
        if allowed == "*" or request_origin == allowed:
            return request_origin
    return None


@app.after_request
def add_cors_headers(resp):
    """
    Attach CORS headers if this was a cross-origin call from an allowed Origin.
    sendBeacon posts text/plain and needs no preflight; the fetch fallback does.
    """
    origin = pick_cors_origin(request.headers.get("Origin"))

    if origin:
        req_method = request.headers.get("Access-Control-Request-Method", "GET,POST,OPTIONS")
        req_headers = request.headers.get("Access-Control-Request-Headers", "Content-Type")

        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Credentials"] = "false"
        resp.headers["Access-Control-Allow-Methods"] = req_method
        resp.headers["Access-Control-Allow-Headers"] = req_headers
        resp.headers["Access-Control-Max-Age"] = "600"
    return resp


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.route("/")
def index():
    db = store.get_db()
    return jsonify(
        {
            "pageViews": store.list_page_views(db),
            "websites": store.list_websites(db),
            "userLocations": store.list_user_locations(db),
        }
    )


@app.route("/websites", methods=["POST", "OPTIONS"])
def create_website():
    """
    Register a site and hand out its tracking id (the api key).
    Body: { "name": "Acme", "domain": "acme.com" }
    """
    if request.method == "OPTIONS":
        return ("", 200)

    body = None
    try:
        body = request.get_json(force=True)
        if not isinstance(body, dict) or not body.get("name") or not body.get("domain"):
            error = "Name and domain are required"
            log_request("POST", "/websites", body, None, error)
            return jsonify({"error": error}), 400

        result = store.create_website(store.get_db(), str(body["name"]), str(body["domain"]))
        log_request("POST", "/websites", body, result)
        return jsonify(result), 201
    except Exception as e:
        log_request("POST", "/websites", body, None, e)
        return jsonify({"error": "Failed to create website"}), 500


@app.route("/analytics", methods=["POST", "OPTIONS"])
def analytics():
    """
    Collector endpoint for the beacon.
    Body example:
      { "id": "<tracking id>",
        "u": "https://acme.com/",
        "e": { "t": "pageview",
               "p": { "url": "/home", "referrer": "", "userAgent": "...",
                      "timestamp": 1700000000000 } } }
    """
    if request.method == "OPTIONS":
        return ("", 200)

    body = None
    try:
        # sendBeacon posts as text/plain, so don't insist on a JSON mimetype
        body = request.get_json(force=True)
        try:
            event = parse_event(body)
            db = store.get_db()
            website = store.find_website_by_api_key(db, event.tracking_id)
            if website is None:
                raise NotFoundError("Invalid tracking ID")
        except (ValidationError, NotFoundError) as e:
            log_request("POST", "/analytics", body, None, str(e))
            return jsonify({"error": str(e)}), 400

        ip_address = client_ip(request)
        location = resolve_location(ip_address)

        page_view_id, _, _ = store.upsert_page_view(
            db,
            website_id=website["id"],
            domain=event.domain,
            route=event.route,
            referrer=event.referrer,
            user_agent=event.user_agent or request.headers.get("User-Agent"),
            timestamp=event.timestamp,
            additional_data=event.additional_data,
        )
        store.insert_user_location(db, page_view_id, location, ip_address)
        db.commit()

        result = {
            "success": True,
            "id": page_view_id,
            "ip": ip_address,
            "location": location,
        }
        log_request("POST", "/analytics", body, result)
        return jsonify(result)
    except Exception as e:
        # uncommitted writes are discarded when teardown closes the connection
        log_request("POST", "/analytics", body, None, e)
        return jsonify({"error": "Failed to process analytics data"}), 500


# -----------------------------------------------------------------------------
# health
# -----------------------------------------------------------------------------
@app.route("/healthz")
def healthz():
    return "ok", 200


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
@app.cli.command("init-db")
def init_db_command():
    """Create the collector tables."""
    store.ensure_schema(store.get_db())
    click.echo(f"Initialized {app.config['DB_PATH']}")


@app.cli.command("register-website")
@click.argument("name")
@click.argument("domain")
@click.option("--collector-url", default="http://localhost:8000", show_default=True)
def register_website_command(name, domain, collector_url):
    """Register a website and print its beacon snippet."""
    db = store.get_db()
    store.ensure_schema(db)
    website = store.create_website(db, name, domain)
    click.echo(f"Tracking ID: {website['apiKey']}")
    click.echo(
        f'<script src="{collector_url.rstrip("/")}/public/script.js?id={website["apiKey"]}"></script>'
    )


if __name__ == "__main__":
    # Dev mode, container uses gunicorn
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"), format=LOG_FORMAT)
    app.run(host="0.0.0.0", port=8000)
