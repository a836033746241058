import json
import logging
import re
import sqlite3
import uuid
from datetime import datetime, timezone

from flask import current_app, g

logger = logging.getLogger(__name__)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS websites (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        domain TEXT NOT NULL,
        api_key TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS page_views (
        id TEXT PRIMARY KEY,
        domain TEXT NOT NULL,
        route TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 1 CHECK (count >= 1),
        timestamp TEXT NOT NULL,
        referrer TEXT,
        user_agent TEXT,
        additional_data TEXT,
        website_id TEXT REFERENCES websites (id),
        UNIQUE (domain, route)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS user_locations (
        id TEXT PRIMARY KEY,
        page_view_id TEXT REFERENCES page_views (id),
        country TEXT,
        country_code TEXT,
        region TEXT,
        city TEXT,
        latitude TEXT,
        longitude TEXT,
        ip_address TEXT,
        timestamp TEXT NOT NULL
    );
    """,
)


# -----------------------------------------------------------------------------
# Connection handling
# -----------------------------------------------------------------------------
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(current_app.config["DB_PATH"])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON;")
    return g.db


def close_db(exc=None):
    db = g.pop("db", None)
    if db:
        db.close()


def ensure_schema(db):
    """
    Create tables if missing. Safe to run every request.
    """
    for statement in SCHEMA:
        db.execute(statement)
    db.commit()


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _camel(name: str) -> str:
    return re.sub(r"_([a-z])", lambda m: m.group(1).upper(), name)


def row_to_dict(row) -> dict:
    out = {_camel(key): row[key] for key in row.keys()}
    if "additionalData" in out and out["additionalData"] is not None:
        out["additionalData"] = json.loads(out["additionalData"])
    return out


# -----------------------------------------------------------------------------
# Websites
# -----------------------------------------------------------------------------
def create_website(db, name: str, domain: str) -> dict:
    now = utcnow()
    website_id = new_id()
    db.execute(
        """
        INSERT INTO websites (id, name, domain, api_key, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (website_id, name, domain, new_id(), now, now),
    )
    db.commit()
    row = db.execute("SELECT * FROM websites WHERE id = ?", (website_id,)).fetchone()
    return row_to_dict(row)


def find_website_by_api_key(db, api_key: str):
    return db.execute(
        "SELECT * FROM websites WHERE api_key = ?", (api_key,)
    ).fetchone()


# -----------------------------------------------------------------------------
# Page views / locations
# -----------------------------------------------------------------------------
def upsert_page_view(
    db,
    website_id: str,
    domain: str,
    route: str,
    referrer: str | None = None,
    user_agent: str | None = None,
    timestamp: str | None = None,
    additional_data=None,
):
    """
    Insert the (domain, route) counter row or bump an existing one.

    The UNIQUE (domain, route) constraint makes this a single atomic
    statement, so concurrent hits on the same page cannot produce a
    duplicate row or lose an increment. On update only ``count`` and
    ``timestamp`` change.

    Returns ``(page_view_id, count, created)``.
    """
    candidate_id = new_id()
    db.execute(
        """
        INSERT INTO page_views
            (id, domain, route, count, timestamp, referrer, user_agent,
             additional_data, website_id)
        VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?)
        ON CONFLICT (domain, route) DO UPDATE SET
            count = page_views.count + 1,
            timestamp = ?
        """,
        (
            candidate_id,
            domain,
            route,
            timestamp or utcnow(),
            referrer,
            user_agent,
            json.dumps(additional_data) if additional_data is not None else None,
            website_id,
            utcnow(),
        ),
    )
    row = db.execute(
        "SELECT id, count FROM page_views WHERE domain = ? AND route = ?",
        (domain, route),
    ).fetchone()
    created = row["id"] == candidate_id
    if created:
        logger.info("Created new page view: %s", row["id"])
    else:
        logger.info("Updated existing page view: %s, new count: %s", row["id"], row["count"])
    return row["id"], row["count"], created


def insert_user_location(db, page_view_id: str, location: dict, ip_address: str) -> str:
    location_id = new_id()
    db.execute(
        """
        INSERT INTO user_locations
            (id, page_view_id, country, country_code, region, city,
             latitude, longitude, ip_address, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            location_id,
            page_view_id,
            location.get("country"),
            location.get("countryCode"),
            location.get("region"),
            location.get("city"),
            location.get("latitude"),
            location.get("longitude"),
            ip_address,
            utcnow(),
        ),
    )
    return location_id


# -----------------------------------------------------------------------------
# Raw listings
# -----------------------------------------------------------------------------
def list_page_views(db) -> list[dict]:
    rows = db.execute(
        "SELECT * FROM page_views ORDER BY timestamp DESC, rowid DESC"
    ).fetchall()
    return [row_to_dict(r) for r in rows]


def list_websites(db) -> list[dict]:
    return [row_to_dict(r) for r in db.execute("SELECT * FROM websites").fetchall()]


def list_user_locations(db) -> list[dict]:
    return [
        row_to_dict(r) for r in db.execute("SELECT * FROM user_locations").fetchall()
    ]
