"""Curated dose prior endpoint plus health check.

Uses raw asyncio.start_server, matching the remote contract that
``RemotePriorClient`` consumes:

    POST /api/dose/priors   {"unitSystem": "eu"|"us", "markers": [...]}
    GET  /health
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any

import psycopg

from .local_priors import LocalPriorStore
from .markers import canonicalize_marker
from .metrics import get_metrics
from .models import UNIT_SYSTEMS, DosePrior

logger = logging.getLogger(__name__)

PRIORS_PATH = "/api/dose/priors"
HEALTH_PATH = "/health"
MAX_JSON_BYTES = 512 * 1024

_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


class BadRequest(Exception):
    pass


def prior_to_payload(prior: DosePrior) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "marker": prior.marker,
        "unitSystem": prior.unit_system,
        "unit": prior.unit,
        "slopePerMg": prior.slope_per_mg,
        "intercept": prior.intercept,
        "sigma": prior.sigma_prior,
        "evidence": [
            {
                "citation": item.citation,
                "studyType": item.study_type,
                "relevance": item.relevance,
                "quality": item.quality,
            }
            for item in prior.evidence
        ],
    }
    if prior.dose_range is not None:
        payload["doseRange"] = {"min": prior.dose_range.min, "max": prior.dose_range.max}
    return payload


def parse_body(body: bytes) -> dict[str, Any]:
    if len(body) > MAX_JSON_BYTES:
        raise BadRequest("Request body too large")
    if not body.strip():
        return {}
    try:
        parsed = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise BadRequest("Invalid JSON body") from None
    if not isinstance(parsed, dict):
        raise BadRequest("JSON body must be an object")
    return parsed


def select_priors(store: LocalPriorStore, request: dict[str, Any]) -> list[DosePrior]:
    """Curated priors for the requested unit system, optionally filtered by marker."""
    unit_system = request.get("unitSystem")
    if unit_system not in UNIT_SYSTEMS:
        unit_system = "eu"
    raw_markers = request.get("markers")
    markers = {
        canonicalize_marker(item)
        for item in (raw_markers if isinstance(raw_markers, list) else [])
        if isinstance(item, str) and item.strip()
    }
    return [prior for prior in store.all(unit_system) if not markers or prior.marker in markers]


async def _check_db(db_url: str) -> str:
    """Try SELECT 1 with a 2s timeout. Returns 'ok' or 'error'."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except Exception:
        return "error"


async def route_request(
    method: str,
    path: str,
    body: bytes,
    store: LocalPriorStore,
    db_url: str | None = None,
) -> tuple[int, dict[str, Any]]:
    path = path.split("?", 1)[0]

    if path == PRIORS_PATH:
        if method != "POST":
            return 405, {"error": {"message": "Method not allowed"}}
        try:
            request = parse_body(body)
        except BadRequest as exc:
            return 400, {"error": {"message": str(exc)}}
        priors = select_priors(store, request)
        logger.info(
            "Served %d curated dose priors",
            len(priors),
            extra={"dose_unit_system": request.get("unitSystem")},
        )
        return 200, {
            "priors": [prior_to_payload(prior) for prior in priors],
            "source": "server-curated",
            "datasetVersion": store.version,
            "generatedAt": datetime.now(UTC).isoformat(),
        }

    if path == HEALTH_PATH:
        if method != "GET":
            return 405, {"error": {"message": "Method not allowed"}}
        db_status = await _check_db(db_url) if db_url else "skipped"
        metrics = get_metrics()
        status = "degraded" if db_status == "error" else "ok"
        return (200 if status == "ok" else 503), {
            "status": status,
            "uptime_seconds": metrics["uptime_seconds"],
            "db": db_status,
            "dataset_version": store.version,
            "metrics": metrics,
        }

    return 404, {"error": "not_found"}


async def _read_request(reader: asyncio.StreamReader) -> tuple[str, str, bytes]:
    request_line = await asyncio.wait_for(reader.readline(), timeout=5)
    # "POST /api/dose/priors HTTP/1.1\r\n"
    parts = request_line.decode("utf-8", errors="replace").strip().split()
    method = parts[0].upper() if parts else ""
    path = parts[1] if len(parts) >= 2 else "/"

    headers: dict[str, str] = {}
    while True:
        line = await asyncio.wait_for(reader.readline(), timeout=5)
        if line in (b"\r\n", b"\n", b""):
            break
        name, _, value = line.decode("latin-1").partition(":")
        headers[name.strip().lower()] = value.strip()

    try:
        length = int(headers.get("content-length") or 0)
    except ValueError:
        raise BadRequest("Invalid Content-Length") from None
    if length > MAX_JSON_BYTES:
        raise BadRequest("Request body too large")
    body = await asyncio.wait_for(reader.readexactly(length), timeout=5) if length > 0 else b""
    return method, path, body


def _render(status_code: int, payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    head = (
        f"HTTP/1.1 {status_code} {_REASONS.get(status_code, 'OK')}\r\n"
        "Content-Type: application/json; charset=utf-8\r\n"
        "Cache-Control: no-store\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode("latin-1") + body


async def _handle_connection(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    store: LocalPriorStore,
    db_url: str | None,
) -> None:
    try:
        try:
            method, path, body = await _read_request(reader)
        except BadRequest as exc:
            status_code, payload = 400, {"error": {"message": str(exc)}}
        else:
            status_code, payload = await route_request(method, path, body, store, db_url)
        writer.write(_render(status_code, payload))
        await writer.drain()
    except Exception:
        logger.debug("Prior service request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_prior_service(
    host: str,
    port: int,
    store: LocalPriorStore | None = None,
    db_url: str | None = None,
) -> asyncio.Server:
    """Start the prior service. Returns the asyncio.Server for lifecycle management."""
    store = store if store is not None else LocalPriorStore()

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_connection(reader, writer, store, db_url)

    server = await asyncio.start_server(handler, host, port)
    logger.info("Dose prior service listening on %s:%d", host, port)
    return server
