#!/usr/bin/env python3
# Tokyo Metro Chiyoda line status proxy for the Kita-Ayase board.

import datetime
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
import json
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple, Union

from dotenv import load_dotenv
from flask import Flask, request, Response
import requests

load_dotenv()

log = logging.getLogger("chiyoda_status")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def utc_now_iso() -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


ODPT_BASE = os.getenv("ODPT_BASE_URL", "https://api.odpt.org/api/v4").rstrip("/")
TOKYO_METRO_API_KEY = os.getenv("TOKYO_METRO_API_KEY", "")
if not TOKYO_METRO_API_KEY:
    log.warning("TOKYO_METRO_API_KEY is not set; upstream calls will be rejected")

RAILWAY_ID = "odpt.Railway:TokyoMetro.Chiyoda"
RAILWAY_NAME = "chiyoda"
USER_AGENT = "kitaayase-worker/1.0"

CACHE_TTL_SEC = 30
MAX_CACHE = env_int("MAX_CACHE", 1000)

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 8787)

NORMAL_MARKER = "平常"
SUSPENDED_MARKER = "見合わせ"
FALLBACK_TEXT = "現在、平常どおり運転しています。"

UPSTREAM_ERROR_MESSAGE = "Tokyo Metro API error"

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

JsonDict = Dict[str, Any]
CacheKey = Tuple[str, str]


class UpstreamError(Exception):
    def __init__(self, status: int, body: str):
        super().__init__(f"{UPSTREAM_ERROR_MESSAGE} ({status})")
        self.status = status
        self.body = body


@dataclass(frozen=True)
class TrainInformation:
    status_ja: str
    text_ja: str
    date: Optional[str]


@dataclass(frozen=True)
class UnrecognizedPayload:
    reason: str


ParsedPayload = Union[TrainInformation, UnrecognizedPayload]


@dataclass(frozen=True)
class CachedResponse:
    status: int
    headers: Tuple[Tuple[str, str], ...]
    body: bytes

    @classmethod
    def from_response(cls, resp: Response) -> "CachedResponse":
        return cls(
            status=resp.status_code,
            headers=tuple(resp.headers.items()),
            body=resp.get_data(),
        )

    def to_response(self) -> Response:
        resp = Response(self.body, status=self.status)
        # Replace werkzeug's defaults with exactly what was stored.
        resp.headers.clear()
        for name, value in self.headers:
            resp.headers.add(name, value)
        return resp


class ResponseCache(Protocol):
    def get(self, key: CacheKey) -> Optional[CachedResponse]: ...

    def put(self, key: CacheKey, response: CachedResponse) -> None: ...


def parse_cache_ttl(headers: Mapping[str, str]) -> Optional[int]:
    cache_control = headers.get("Cache-Control", "")
    for part in cache_control.split(","):
        part = part.strip().lower()
        if part == "no-store":
            return None
        if part.startswith("max-age="):
            value = part.split("=", 1)[1]
            if value.isdigit():
                return int(value)

    expires = headers.get("Expires")
    if not expires:
        return None
    try:
        parsed = parsedate_to_datetime(expires)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    delta = parsed - datetime.datetime.now(datetime.timezone.utc)
    return max(0, int(delta.total_seconds()))


class MemoryResponseCache:
    """In-process stand-in for a shared edge cache.

    Entries live for the max-age advertised by the stored response itself.
    Responses without a freshness lifetime (or marked no-store) are ignored.
    """

    def __init__(self, max_entries: int = MAX_CACHE, clock: Callable[[], float] = time.time) -> None:
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[CachedResponse, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[CachedResponse]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            cached, expires_at = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            return cached

    def put(self, key: CacheKey, response: CachedResponse) -> None:
        ttl = parse_cache_ttl(dict(response.headers))
        if not ttl:
            return
        now = self._clock()
        with self._lock:
            self._prune(now)
            self._entries[key] = (response, now + ttl)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # Bounds protect memory when many distinct URLs are requested.
    def _prune(self, now: float) -> None:
        expired = [key for key, (_, exp) in self._entries.items() if exp <= now]
        for key in expired:
            self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            self._entries.clear()


response_cache = MemoryResponseCache()

app = Flask(__name__)
session = requests.Session()


def train_information_url() -> str:
    return (
        f"{ODPT_BASE}/odpt:TrainInformation"
        f"?odpt:railway={RAILWAY_ID}"
        f"&acl:consumerKey={TOKYO_METRO_API_KEY}"
    )


def fetch_train_information() -> Any:
    try:
        resp = session.get(
            train_information_url(),
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        )
    except requests.RequestException as exc:
        # The exception text carries the URL, which carries the key.
        log.warning("Tokyo Metro request failed: %s", type(exc).__name__)
        raise UpstreamError(502, "request failed") from exc

    if not 200 <= resp.status_code < 300:
        log.warning("Tokyo Metro API returned %s", resp.status_code)
        raise UpstreamError(resp.status_code, resp.text)

    try:
        return resp.json()
    except ValueError:
        log.warning("Tokyo Metro API returned invalid JSON")
        return None


def parse_train_information(data: Any) -> ParsedPayload:
    if not isinstance(data, list):
        return UnrecognizedPayload("not_array")
    if not data:
        return UnrecognizedPayload("empty")
    first = data[0]
    if not isinstance(first, dict):
        return UnrecognizedPayload("not_object")

    def ja(field: str) -> str:
        value = first.get(field)
        if not isinstance(value, dict):
            return ""
        text = value.get("ja")
        return text if isinstance(text, str) else ""

    date = first.get("dc:date")
    return TrainInformation(
        status_ja=ja("odpt:trainInformationStatus"),
        text_ja=ja("odpt:trainInformationText"),
        date=date if isinstance(date, str) else None,
    )


def classify_state(status_text: str) -> str:
    if NORMAL_MARKER in status_text:
        return "normal"
    if SUSPENDED_MARKER in status_text:
        return "suspended"
    return "delay"


def normalize(parsed: ParsedPayload, now: Optional[str] = None) -> JsonDict:
    if isinstance(parsed, UnrecognizedPayload):
        return {
            "railway": RAILWAY_NAME,
            "state": "normal",
            "text": FALLBACK_TEXT,
            "updatedAt": now or utc_now_iso(),
        }

    updated_at = parsed.date
    if updated_at is None:
        updated_at = now or utc_now_iso()
    return {
        "railway": RAILWAY_NAME,
        "state": classify_state(parsed.status_ja),
        "text": parsed.text_ja or FALLBACK_TEXT,
        "updatedAt": updated_at,
    }


def json_response(payload: JsonDict, status: int = 200) -> Response:
    body = json.dumps(payload, ensure_ascii=False, indent=2)
    return Response(body, status=status, mimetype="application/json")


def status_response(payload: JsonDict) -> Response:
    resp = json_response(payload)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Cache-Control"] = f"public, max-age={CACHE_TTL_SEC}"
    return resp


def upstream_error_response(exc: UpstreamError) -> Response:
    resp = json_response(
        {"error": UPSTREAM_ERROR_MESSAGE, "status": exc.status, "body": exc.body},
        status=500,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def serve_status(
    cache_key: CacheKey,
    cache: ResponseCache,
    fetch: Optional[Callable[[], Any]] = None,
) -> Response:
    cached = cache.get(cache_key)
    if cached is not None:
        log.debug("cache hit %s %s", *cache_key)
        return cached.to_response()
    log.debug("cache miss %s %s", *cache_key)

    try:
        data = (fetch or fetch_train_information)()
    except UpstreamError as exc:
        return upstream_error_response(exc)

    parsed = parse_train_information(data)
    if isinstance(parsed, UnrecognizedPayload) and parsed.reason != "empty":
        log.warning("Unrecognized TrainInformation payload: %s", parsed.reason)

    resp = status_response(normalize(parsed))
    cache.put(cache_key, CachedResponse.from_response(resp))
    return resp


@app.after_request
def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


@app.route("/", defaults={"path": ""}, methods=ALL_METHODS)
@app.route("/<path:path>", methods=ALL_METHODS)
def chiyoda_status(path: str) -> Response:
    return serve_status((request.method, request.url), response_cache)


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)
