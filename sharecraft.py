from __future__ import annotations

import asyncio
import enum
import hashlib
import hmac
import html
import json
import logging
import mimetypes
import os
import re
import secrets
import sqlite3
import string
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests
from bs4 import BeautifulSoup, UnicodeDammit
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from jinja2 import Environment, FileSystemLoader, Template, select_autoescape
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("sharecraft")

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

SESSION_COOKIE_RE = re.compile(r"(?:^|;)\s*session=([^;]+)")
SESSION_KEY_PREFIX = "session_"

IMAGE_CACHE_CONTROL = "public, max-age=31536000"
DEFAULT_IMAGE_CONTENT_TYPE = "image/jpeg"

DEFAULT_FETCH_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/115.0 Safari/537.36"
)

# Headers that no longer describe the body once requests has decoded it.
DROPPED_ORIGIN_HEADERS = {"content-encoding", "transfer-encoding", "content-length", "connection"}
# Validators and type that describe the origin body, not the rewritten one.
REWRITTEN_DROPPED_HEADERS = ("content-type", "etag", "last-modified")


# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------

class ShareCraftError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ShareCraftError):
    status_code = status.HTTP_400_BAD_REQUEST


class DuplicatePathError(ShareCraftError):
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(ShareCraftError):
    status_code = status.HTTP_404_NOT_FOUND


class Unauthorized(ShareCraftError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class UpstreamError(ShareCraftError):
    status_code = status.HTTP_502_BAD_GATEWAY


class LoginRequired(Exception):
    """Raised by admin page dependencies; answered with a redirect to the login form."""


# ------------------------------------------------------------------------------
# Settings
# ------------------------------------------------------------------------------

def as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def as_log_level(value: str | None, default: str) -> str:
    if value is None:
        return default
    level = value.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        return default
    return level


@dataclass
class Settings:
    origin_url: str = "https://example.com"
    db_path: str = "sharecraft.db"
    blob_dir: str = "preview_images"
    template_dir: str = str(DEFAULT_TEMPLATE_DIR)
    site_domain: str = ""
    admin_username: str = "admin"
    admin_password: str = ""
    session_ttl: int = 86400
    origin_timeout: float = 15.0
    rewriter: str = "regex"
    log_level: str = "INFO"


def load_settings(environ: Optional[Dict[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    defaults = Settings()
    return Settings(
        origin_url=env.get("SHARECRAFT_ORIGIN_URL", defaults.origin_url).strip(),
        db_path=env.get("SHARECRAFT_DB_PATH", defaults.db_path),
        blob_dir=env.get("SHARECRAFT_BLOB_DIR", defaults.blob_dir),
        template_dir=env.get("SHARECRAFT_TEMPLATE_DIR", defaults.template_dir),
        site_domain=env.get("SHARECRAFT_SITE_DOMAIN", "").strip(),
        admin_username=env.get("SHARECRAFT_ADMIN_USERNAME", defaults.admin_username),
        admin_password=env.get("SHARECRAFT_ADMIN_PASSWORD", ""),
        session_ttl=max(1, as_int(env.get("SHARECRAFT_SESSION_TTL"), default=defaults.session_ttl)),
        origin_timeout=max(1.0, as_float(env.get("SHARECRAFT_ORIGIN_TIMEOUT"), default=defaults.origin_timeout)),
        rewriter=env.get("SHARECRAFT_REWRITER", defaults.rewriter).strip().lower() or defaults.rewriter,
        log_level=as_log_level(env.get("SHARECRAFT_LOG_LEVEL"), default=defaults.log_level),
    )


# ------------------------------------------------------------------------------
# Crawler detection
# ------------------------------------------------------------------------------

SOCIAL_CRAWLERS = [
    "facebookexternalhit",
    "Twitterbot",
    "LinkedInBot",
    "WhatsApp",
    "Slackbot",
    "TelegramBot",
    "discord",
    "Discordbot",
    "Pinterest",
    "Googlebot",
]

_SOCIAL_CRAWLER_SIGNATURES = tuple(crawler.lower() for crawler in SOCIAL_CRAWLERS)


def is_social_crawler(user_agent: str | None) -> bool:
    if not user_agent:
        return False
    ua = user_agent.lower()
    return any(signature in ua for signature in _SOCIAL_CRAWLER_SIGNATURES)


# ------------------------------------------------------------------------------
# Override store
# ------------------------------------------------------------------------------

REQUIRED_OVERRIDE_FIELDS = ("path", "title", "description", "image_url")


@dataclass
class Override:
    id: int
    path: str
    title: str
    description: str
    image_url: str
    is_default: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Override":
        return cls(
            id=row["id"],
            path=row["path"],
            title=row["title"],
            description=row["description"],
            image_url=row["image_url"],
            is_default=bool(row["is_default"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _require_text(fields: Dict[str, object], names) -> None:
    missing = [
        name for name in names
        if not isinstance(fields.get(name), str) or not fields[name].strip()
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


class OverrideStore:
    """Path-keyed social preview overrides kept in the ``social_previews`` table.

    Every call opens its own connection, so a store can be shared freely
    between requests and worker threads.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        conn = self.connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS social_previews (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    path TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _fetch_one(self, query: str, params: tuple = ()) -> Optional[Override]:
        conn = self.connect()
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()
        return Override.from_row(row) if row else None

    def _count(self, query: str) -> int:
        conn = self.connect()
        try:
            return conn.execute(query).fetchone()[0]
        finally:
            conn.close()

    def list_all(self) -> List[Override]:
        conn = self.connect()
        try:
            rows = conn.execute("SELECT * FROM social_previews ORDER BY id DESC").fetchall()
        finally:
            conn.close()
        return [Override.from_row(row) for row in rows]

    def get(self, override_id: int) -> Optional[Override]:
        return self._fetch_one("SELECT * FROM social_previews WHERE id = ?", (override_id,))

    def get_by_path(self, path: str) -> Optional[Override]:
        return self._fetch_one("SELECT * FROM social_previews WHERE path = ?", (path,))

    def get_default(self) -> Optional[Override]:
        # Several records may carry the flag; the oldest one wins.
        return self._fetch_one(
            "SELECT * FROM social_previews WHERE is_default = 1 ORDER BY id ASC LIMIT 1"
        )

    def create(
        self,
        path: str,
        title: str,
        description: str,
        image_url: str,
        is_default: bool = False,
    ) -> Override:
        fields = {"path": path, "title": title, "description": description, "image_url": image_url}
        _require_text(fields, REQUIRED_OVERRIDE_FIELDS)

        conn = self.connect()
        try:
            existing = conn.execute("SELECT id FROM social_previews WHERE path = ?", (path,)).fetchone()
            if existing:
                raise DuplicatePathError(f"Path already exists: {path}")
            try:
                cursor = conn.execute(
                    "INSERT INTO social_previews (path, title, description, image_url, is_default) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (path, title, description, image_url, 1 if is_default else 0),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicatePathError(f"Path already exists: {path}") from exc
            conn.commit()
            row = conn.execute("SELECT * FROM social_previews WHERE id = ?", (cursor.lastrowid,)).fetchone()
        finally:
            conn.close()

        if row is None:
            raise NotFoundError(f"Override for path {path} vanished after insert")
        logger.info("Created override %s for path %s", row["id"], path)
        return Override.from_row(row)

    def update(self, override_id: int, **changes) -> Override:
        unknown = set(changes) - set(REQUIRED_OVERRIDE_FIELDS) - {"is_default"}
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        _require_text(changes, [name for name in REQUIRED_OVERRIDE_FIELDS if name in changes])

        existing = self.get(override_id)
        if existing is None:
            raise NotFoundError(f"Override {override_id} not found")
        if not changes:
            return existing

        assignments = []
        params: List[object] = []
        for name, value in changes.items():
            assignments.append(f"{name} = ?")
            if name == "is_default":
                value = 1 if value else 0
            params.append(value)
        params.append(override_id)

        conn = self.connect()
        try:
            try:
                cursor = conn.execute(
                    f"UPDATE social_previews SET {', '.join(assignments)}, "
                    "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    tuple(params),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicatePathError(f"Path already exists: {changes.get('path')}") from exc
            conn.commit()
            row = None
            if cursor.rowcount:
                row = conn.execute("SELECT * FROM social_previews WHERE id = ?", (override_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            raise NotFoundError(f"Override {override_id} not found")
        logger.info("Updated override %s (%s)", override_id, ", ".join(sorted(changes)))
        return Override.from_row(row)

    def delete(self, override_id: int) -> None:
        conn = self.connect()
        try:
            conn.execute("DELETE FROM social_previews WHERE id = ?", (override_id,))
            conn.commit()
        finally:
            conn.close()

    def count_all(self) -> int:
        return self._count("SELECT COUNT(*) FROM social_previews")

    def count_custom(self) -> int:
        return self._count("SELECT COUNT(*) FROM social_previews WHERE is_default = 0")

    def recent(self, limit: int = 10) -> List[Override]:
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT * FROM social_previews ORDER BY updated_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [Override.from_row(row) for row in rows]


def resolve_override(store: OverrideStore, path: str) -> Optional[Override]:
    """Exact path match first, then the default record, else ``None``."""
    override = store.get_by_path(path)
    if override is not None:
        return override
    return store.get_default()


# ------------------------------------------------------------------------------
# Meta tag rewriting
# ------------------------------------------------------------------------------

OG_TAGS = ("og:title", "og:description", "og:image")
TWITTER_TAGS = ("twitter:title", "twitter:description", "twitter:image")

HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)


def _meta_tag_pattern(key: str) -> re.Pattern:
    # Matches <meta ... property="key" ...> in any attribute order or quoting.
    return re.compile(
        r"<meta\b[^>]*?\b(?:property|name)\s*=\s*([\"']?)" + re.escape(key) + r"\1(?=[\s/>])[^>]*>",
        re.IGNORECASE,
    )


META_TAG_PATTERNS: Dict[str, re.Pattern] = {
    key: _meta_tag_pattern(key) for key in OG_TAGS + TWITTER_TAGS + ("twitter:card",)
}


def _meta_values(meta: Override) -> Dict[str, str]:
    return {
        "og:title": meta.title,
        "og:description": meta.description,
        "og:image": meta.image_url,
        "twitter:title": meta.title,
        "twitter:description": meta.description,
        "twitter:image": meta.image_url,
    }


def _build_meta_tag(attribute: str, key: str, value: str) -> str:
    return f'<meta {attribute}="{key}" content="{html.escape(value, quote=True)}">'


def build_twitter_card(meta: Override) -> str:
    tags = [_build_meta_tag("name", "twitter:card", "summary_large_image")]
    values = _meta_values(meta)
    tags.extend(_build_meta_tag("name", key, values[key]) for key in TWITTER_TAGS)
    return "\n".join(tags)


def rewrite_meta_tags(page_html: str, meta: Override) -> str:
    values = _meta_values(meta)
    rendered = page_html

    for key in OG_TAGS:
        replacement = _build_meta_tag("property", key, values[key])
        rendered = META_TAG_PATTERNS[key].sub(lambda _match: replacement, rendered, count=1)

    if META_TAG_PATTERNS["twitter:card"].search(rendered) is None:
        head_close = HEAD_CLOSE_RE.search(rendered)
        if head_close is not None:
            position = head_close.start()
            rendered = rendered[:position] + build_twitter_card(meta) + rendered[position:]
        return rendered

    for key in TWITTER_TAGS:
        replacement = _build_meta_tag("name", key, values[key])
        rendered = META_TAG_PATTERNS[key].sub(lambda _match: replacement, rendered, count=1)
    return rendered


def _find_meta(soup: BeautifulSoup, key: str):
    for tag in soup.find_all("meta"):
        identifier = tag.get("property") or tag.get("name") or ""
        if identifier.strip().lower() == key:
            return tag
    return None


def rewrite_meta_tags_with_soup(page_html: str, meta: Override) -> str:
    soup = BeautifulSoup(page_html, "html.parser")
    values = _meta_values(meta)

    for key in OG_TAGS:
        tag = _find_meta(soup, key)
        if tag is not None:
            tag.replace_with(soup.new_tag("meta", attrs={"property": key, "content": values[key]}))

    if _find_meta(soup, "twitter:card") is None:
        if soup.head is not None and HEAD_CLOSE_RE.search(page_html):
            soup.head.append(soup.new_tag("meta", attrs={"name": "twitter:card", "content": "summary_large_image"}))
            for key in TWITTER_TAGS:
                soup.head.append(soup.new_tag("meta", attrs={"name": key, "content": values[key]}))
        return str(soup)

    for key in TWITTER_TAGS:
        tag = _find_meta(soup, key)
        if tag is not None:
            tag.replace_with(soup.new_tag("meta", attrs={"name": key, "content": values[key]}))
    return str(soup)


Rewriter = Callable[[str, Override], str]

REWRITERS: Dict[str, Rewriter] = {
    "regex": rewrite_meta_tags,
    "soup": rewrite_meta_tags_with_soup,
}


def get_rewriter(name: str) -> Rewriter:
    try:
        return REWRITERS[name]
    except KeyError:
        raise ValueError(f"Unknown rewriter {name!r}; expected one of {', '.join(sorted(REWRITERS))}") from None


# ------------------------------------------------------------------------------
# Blob and key-value stores
# ------------------------------------------------------------------------------

@dataclass
class BlobObject:
    key: str
    data: bytes
    content_type: str
    etag: str


class FileBlobStore:
    """Write-once image storage: ``<key>`` holds the bytes, ``<key>.meta.json`` the headers."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def _paths(self, key: str) -> tuple[Path, Path] | None:
        if not key or Path(key).name != key or key.startswith(".") or key.endswith(".meta.json"):
            return None
        return self.directory / key, self.directory / f"{key}.meta.json"

    def put(self, key: str, data: bytes, content_type: str) -> BlobObject:
        paths = self._paths(key)
        if paths is None:
            raise ValidationError(f"Invalid blob key: {key!r}")
        data_path, meta_path = paths
        self.directory.mkdir(parents=True, exist_ok=True)

        etag = hashlib.md5(data).hexdigest()
        temp_path = data_path.parent / f"{data_path.name}.tmp"
        temp_path.write_bytes(data)
        temp_path.replace(data_path)
        meta_path.write_text(json.dumps({"content_type": content_type, "etag": etag}), encoding="utf-8")
        return BlobObject(key=key, data=data, content_type=content_type, etag=etag)

    def get(self, key: str) -> Optional[BlobObject]:
        paths = self._paths(key)
        if paths is None:
            return None
        data_path, meta_path = paths
        try:
            data = data_path.read_bytes()
        except FileNotFoundError:
            return None

        content_type = DEFAULT_IMAGE_CONTENT_TYPE
        etag = hashlib.md5(data).hexdigest()
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            content_type = meta.get("content_type") or content_type
            etag = meta.get("etag") or etag
        except FileNotFoundError:
            logger.warning("Blob %s has no metadata; serving as %s", key, content_type)
        return BlobObject(key=key, data=data, content_type=content_type, etag=etag)


class SqliteKVStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def init_schema(self) -> None:
        conn = self.connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        conn = self.connect()
        try:
            row = conn.execute("SELECT value, expires_at FROM kv_entries WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at is not None and expires_at <= time.time():
                conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
                conn.commit()
                return None
            return value
        finally:
            conn.close()

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        conn = self.connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, expires_at),
            )
            conn.commit()
        finally:
            conn.close()


# ------------------------------------------------------------------------------
# Sessions
# ------------------------------------------------------------------------------

@dataclass
class AuthStatus:
    authenticated: bool
    user: Dict[str, str] | None = None


def extract_session_token(cookie_header: str | None) -> str | None:
    if not cookie_header:
        return None
    match = SESSION_COOKIE_RE.search(cookie_header)
    return match.group(1).strip() if match else None


def session_cookie(token: str, max_age: int) -> str:
    return f"session={token}; HttpOnly; Path=/; SameSite=Strict; Max-Age={max_age}"


class SessionAuthenticator:
    def __init__(self, kv: SqliteKVStore, username: str, password: str, ttl_seconds: int = 86400) -> None:
        self.kv = kv
        self.username = username
        self.password = password
        self.ttl_seconds = ttl_seconds

    def check_credentials(self, username: str, password: str) -> bool:
        if not self.password:
            logger.warning("Admin login attempted but no admin password is configured")
            return False
        expected_user = hashlib.sha256(self.username.encode()).hexdigest()
        expected_password = hashlib.sha256(self.password.encode()).hexdigest()
        user_ok = hmac.compare_digest(hashlib.sha256(username.encode()).hexdigest(), expected_user)
        password_ok = hmac.compare_digest(hashlib.sha256(password.encode()).hexdigest(), expected_password)
        return user_ok and password_ok

    def create_session(self, username: str) -> str:
        token = str(uuid.uuid4())
        payload = json.dumps({"username": username, "role": "admin"})
        self.kv.put(f"{SESSION_KEY_PREFIX}{token}", payload, self.ttl_seconds)
        return token

    def authenticate(self, cookie_header: str | None) -> AuthStatus:
        token = extract_session_token(cookie_header)
        if not token:
            return AuthStatus(authenticated=False)

        stored = self.kv.get(f"{SESSION_KEY_PREFIX}{token}")
        if stored is None:
            return AuthStatus(authenticated=False)
        try:
            user = json.loads(stored)
        except ValueError:
            logger.warning("Discarding unreadable session payload")
            return AuthStatus(authenticated=False)
        if not isinstance(user, dict) or not user.get("username"):
            return AuthStatus(authenticated=False)
        return AuthStatus(authenticated=True, user=user)


# ------------------------------------------------------------------------------
# Templates
# ------------------------------------------------------------------------------

class TemplateCache:
    """Compiled admin templates, filled lazily and never evicted.

    Entries are immutable once inserted; two threads compiling the same
    template produce equivalent objects and the first one stored is kept.
    """

    def __init__(self, directory: str) -> None:
        self._env = Environment(
            loader=FileSystemLoader(directory),
            autoescape=select_autoescape(["html", "xml"]),
            cache_size=0,
        )
        self._compiled: Dict[str, Template] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._compiled

    def __len__(self) -> int:
        return len(self._compiled)

    def get(self, name: str) -> Template:
        template = self._compiled.get(name)
        if template is None:
            template = self._compiled.setdefault(name, self._env.get_template(name))
        return template

    def render(self, name: str, **context) -> str:
        return self.get(name).render(**context)


# ------------------------------------------------------------------------------
# Routing
# ------------------------------------------------------------------------------

class RequestKind(enum.Enum):
    API = "api"
    ADMIN = "admin"
    IMAGE = "image"
    PAGE = "page"


ROUTE_PREFIXES = [
    ("/api", RequestKind.API),
    ("/admin", RequestKind.ADMIN),
    ("/images", RequestKind.IMAGE),
]


def classify_request(path: str) -> RequestKind:
    for prefix, kind in ROUTE_PREFIXES:
        if path == prefix or path.startswith(prefix + "/"):
            return kind
    return RequestKind.PAGE


def fetch_origin(url: str, headers: Dict[str, str], timeout: float) -> requests.Response:
    return requests.get(url, headers=headers, timeout=timeout)


def build_origin_url(origin_url: str, path: str, query: str) -> str:
    target = f"{origin_url.rstrip('/')}/{path.lstrip('/')}"
    if query:
        target = f"{target}?{query}"
    return target


def passthrough_headers(upstream: requests.Response, extra_dropped=()) -> Dict[str, str]:
    dropped = DROPPED_ORIGIN_HEADERS | {name.lower() for name in extra_dropped}
    return {
        name: value
        for name, value in upstream.headers.items()
        if name.lower() not in dropped
    }


def decode_origin_html(upstream: requests.Response) -> str:
    # Without a charset requests assumes ISO-8859-1; let the markup decide instead.
    if "charset=" in upstream.headers.get("Content-Type", "").lower():
        return upstream.text
    dammit = UnicodeDammit(upstream.content, is_html=True)
    if dammit.unicode_markup is None:
        return upstream.text
    return dammit.unicode_markup


def generate_image_name(filename: str | None, content_type: str | None) -> str:
    extension = ""
    if filename and "." in filename:
        extension = filename.rsplit(".", 1)[1].lower()
    elif content_type:
        guessed = mimetypes.guess_extension(content_type.split(";", 1)[0].strip())
        extension = guessed.lstrip(".") if guessed else ""

    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(13))
    name = f"{int(time.time() * 1000)}-{suffix}"
    return f"{name}.{extension}" if extension else name


class PostCreate(BaseModel):
    path: str
    title: str
    description: str
    image_url: str
    is_default: bool = False


class PostUpdate(BaseModel):
    path: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_default: Optional[bool] = None


def get_store(request: Request) -> OverrideStore:
    return request.app.state.store


def get_templates(request: Request) -> TemplateCache:
    return request.app.state.templates


def api_session(request: Request) -> AuthStatus:
    auth = request.app.state.sessions.authenticate(request.headers.get("cookie"))
    if not auth.authenticated:
        raise Unauthorized()
    return auth


def admin_session(request: Request) -> AuthStatus:
    auth = request.app.state.sessions.authenticate(request.headers.get("cookie"))
    if not auth.authenticated:
        raise LoginRequired()
    return auth


router = APIRouter()


# ------------------------------------------------------------------------------
# JSON API routes
# ------------------------------------------------------------------------------

@router.get("/api/posts")
async def list_posts(
    auth: AuthStatus = Depends(api_session),
    store: OverrideStore = Depends(get_store),
) -> JSONResponse:
    return JSONResponse([override.to_dict() for override in store.list_all()])


@router.post("/api/posts", status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: PostCreate,
    auth: AuthStatus = Depends(api_session),
    store: OverrideStore = Depends(get_store),
) -> JSONResponse:
    override = store.create(**payload.model_dump())
    return JSONResponse(override.to_dict(), status_code=status.HTTP_201_CREATED)


@router.put("/api/posts/{override_id}")
async def update_post(
    override_id: int,
    payload: PostUpdate,
    auth: AuthStatus = Depends(api_session),
    store: OverrideStore = Depends(get_store),
) -> JSONResponse:
    override = store.update(override_id, **payload.model_dump(exclude_none=True))
    return JSONResponse(override.to_dict())


@router.delete("/api/posts/{override_id}")
async def delete_post(
    override_id: int,
    auth: AuthStatus = Depends(api_session),
    store: OverrideStore = Depends(get_store),
) -> JSONResponse:
    store.delete(override_id)
    return JSONResponse({"success": True})


@router.post("/api/upload")
async def upload_image(
    request: Request,
    image: Optional[UploadFile] = File(None),
    auth: AuthStatus = Depends(api_session),
) -> JSONResponse:
    if image is None or not image.filename:
        raise ValidationError("No file uploaded")

    data = await image.read()
    content_type = image.content_type or "application/octet-stream"
    file_name = generate_image_name(image.filename, content_type)
    request.app.state.blobs.put(file_name, data, content_type)

    domain = request.app.state.settings.site_domain or request.headers.get("host", "")
    logger.info("Stored uploaded image %s (%d bytes, %s)", file_name, len(data), content_type)
    return JSONResponse(
        {
            "success": True,
            "fileName": file_name,
            "url": f"https://{domain}/images/{file_name}",
        }
    )


# ------------------------------------------------------------------------------
# Admin UI routes
# ------------------------------------------------------------------------------

@router.get("/admin/login", response_class=HTMLResponse)
async def login_form(templates: TemplateCache = Depends(get_templates)) -> HTMLResponse:
    return HTMLResponse(templates.render("login.html", error_message=None))


@router.post("/admin/login")
async def login(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
    templates: TemplateCache = Depends(get_templates),
) -> Response:
    sessions: SessionAuthenticator = request.app.state.sessions
    if not sessions.check_credentials(username, password):
        logger.warning("Rejected admin login for %r", username)
        return HTMLResponse(templates.render("login.html", error_message="Invalid username or password"))

    token = sessions.create_session(username)
    logger.info("Admin %s logged in", username)
    response = RedirectResponse("/admin", status_code=status.HTTP_303_SEE_OTHER)
    response.headers["Set-Cookie"] = session_cookie(token, sessions.ttl_seconds)
    return response


async def _safe_count(query: Callable[[], int], label: str) -> int:
    try:
        return await run_in_threadpool(query)
    except Exception as exc:
        logger.exception("Dashboard %s query failed: %s", label, exc)
        return 0


@router.get("/admin", response_class=HTMLResponse)
async def admin_dashboard(
    auth: AuthStatus = Depends(admin_session),
    store: OverrideStore = Depends(get_store),
    templates: TemplateCache = Depends(get_templates),
) -> HTMLResponse:
    total_pages, custom_previews = await asyncio.gather(
        _safe_count(store.count_all, "total"),
        _safe_count(store.count_custom, "custom"),
    )
    try:
        recent = store.recent(limit=10)
    except Exception as exc:
        logger.exception("Dashboard recent pages query failed: %s", exc)
        recent = []

    pages = [
        {
            "id": override.id,
            "url": override.path,
            "preview_type": "Default" if override.is_default else "Custom",
            "last_modified": override.updated_at,
        }
        for override in recent
    ]
    return HTMLResponse(
        templates.render(
            "panel.html",
            user=auth.user,
            total_pages=total_pages,
            custom_previews=custom_previews,
            pages=pages,
        )
    )


@router.get("/admin/add", response_class=HTMLResponse)
async def admin_add(
    auth: AuthStatus = Depends(admin_session),
    templates: TemplateCache = Depends(get_templates),
) -> HTMLResponse:
    return HTMLResponse(templates.render("add.html", user=auth.user))


@router.get("/admin/edit", response_class=HTMLResponse)
async def admin_edit(
    id: str = "",
    auth: AuthStatus = Depends(admin_session),
    store: OverrideStore = Depends(get_store),
    templates: TemplateCache = Depends(get_templates),
) -> Response:
    try:
        post = store.get(int(id))
    except ValueError:
        return RedirectResponse("/admin", status_code=status.HTTP_302_FOUND)
    except Exception as exc:
        logger.exception("Error fetching override %s: %s", id, exc)
        return RedirectResponse("/admin", status_code=status.HTTP_302_FOUND)

    if post is None:
        return RedirectResponse("/admin", status_code=status.HTTP_302_FOUND)
    return HTMLResponse(templates.render("edit.html", user=auth.user, post=post))


# ------------------------------------------------------------------------------
# Images
# ------------------------------------------------------------------------------

@router.get("/images/{name}")
async def serve_image(name: str, request: Request) -> Response:
    blob = request.app.state.blobs.get(name)
    if blob is None:
        logger.warning("Image %s not found", name)
        return PlainTextResponse("Image not found", status_code=status.HTTP_404_NOT_FOUND)
    return Response(
        content=blob.data,
        media_type=blob.content_type,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL, "ETag": f'"{blob.etag}"'},
    )


# ------------------------------------------------------------------------------
# Page pipeline
# ------------------------------------------------------------------------------

@router.get("/{path:path}")
async def proxy_page(path: str, request: Request) -> Response:
    request_path = request.url.path
    kind = classify_request(request_path)
    if kind is RequestKind.API:
        raise NotFoundError("Not found")
    if kind is RequestKind.ADMIN:
        return RedirectResponse("/admin", status_code=status.HTTP_302_FOUND)
    if kind is RequestKind.IMAGE:
        return PlainTextResponse("Image not found", status_code=status.HTTP_404_NOT_FOUND)

    settings: Settings = request.app.state.settings
    user_agent = request.headers.get("user-agent", "")
    target_url = build_origin_url(settings.origin_url, request_path, request.url.query or "")
    headers = {"User-Agent": user_agent or DEFAULT_FETCH_USER_AGENT}
    if "accept-language" in request.headers:
        headers["Accept-Language"] = request.headers["accept-language"]

    try:
        upstream = fetch_origin(target_url, headers, settings.origin_timeout)
    except requests.RequestException as exc:
        logger.exception("Origin fetch failed for %s: %s", target_url, exc)
        raise UpstreamError(f"Error fetching content: {exc}") from exc

    original = Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=passthrough_headers(upstream),
    )

    if not is_social_crawler(user_agent):
        return original

    content_type = upstream.headers.get("Content-Type", "").lower()
    if "text/html" not in content_type:
        return original

    try:
        override = resolve_override(request.app.state.store, request_path)
        if override is None:
            logger.info("Social crawler on %s but no override applies", request_path)
            return original
        rendered = request.app.state.rewriter(decode_origin_html(upstream), override)
    except Exception as exc:
        logger.exception("Preview rewrite failed for %s; serving origin page: %s", request_path, exc)
        return original

    logger.info("Applied override %s to %s for %s", override.id, request_path, user_agent)
    return HTMLResponse(
        content=rendered,
        status_code=upstream.status_code,
        headers=passthrough_headers(upstream, extra_dropped=REWRITTEN_DROPPED_HEADERS),
    )


# ------------------------------------------------------------------------------
# Application factory
# ------------------------------------------------------------------------------

async def sharecraft_error_handler(request: Request, exc: ShareCraftError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({str(error["loc"][-1]) for error in exc.errors() if error.get("loc")})
    message = "Invalid or missing fields"
    if fields:
        message = f"{message}: {', '.join(fields)}"
    return JSONResponse({"error": message}, status_code=status.HTTP_400_BAD_REQUEST)


async def store_error_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
    logger.error("Store failure on %s", request.url.path, exc_info=exc)
    return JSONResponse({"error": f"Database error: {exc}"}, status_code=UpstreamError.status_code)


async def login_required_handler(request: Request, exc: LoginRequired) -> RedirectResponse:
    return RedirectResponse("/admin/login", status_code=status.HTTP_302_FOUND)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.getLogger("sharecraft").setLevel(settings.log_level)

    app = FastAPI(title="ShareCraft social preview proxy")
    app.state.settings = settings
    app.state.store = OverrideStore(settings.db_path)
    app.state.kv = SqliteKVStore(settings.db_path)
    app.state.blobs = FileBlobStore(settings.blob_dir)
    app.state.sessions = SessionAuthenticator(
        app.state.kv,
        username=settings.admin_username,
        password=settings.admin_password,
        ttl_seconds=settings.session_ttl,
    )
    app.state.templates = TemplateCache(settings.template_dir)
    app.state.rewriter = get_rewriter(settings.rewriter)

    app.add_exception_handler(ShareCraftError, sharecraft_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(LoginRequired, login_required_handler)
    app.add_exception_handler(sqlite3.Error, store_error_handler)

    @app.on_event("startup")
    def on_startup() -> None:
        app.state.store.init_schema()
        app.state.kv.init_schema()
        logger.info("ShareCraft proxying %s (rewriter=%s)", settings.origin_url, settings.rewriter)

    app.include_router(router)
    return app


app = create_app()

# expose ASGI app
application = app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
