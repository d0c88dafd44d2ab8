#!/usr/bin/env python3
"""Confluence → JetBrains Space documents migration CLI."""

import json
import logging
import os
import sys
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from urllib.parse import parse_qs, quote, unquote, unquote_plus, urljoin, urlparse

import click
import html2text
import requests
from bs4 import BeautifulSoup, Comment, Tag
from dotenv import load_dotenv

load_dotenv()

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
REDACT_PATTERNS = []
SECRET_ENV_KEYS = ("CONFLUENCE_PASSWORD", "SPACE_TOKEN")


class RedactFilter(logging.Filter):
    """Redact sensitive values from log records."""

    def filter(self, record):
        msg = record.getMessage()
        for pattern in REDACT_PATTERNS:
            if pattern:
                msg = msg.replace(pattern, "***REDACTED***")
        record.msg = msg
        record.args = ()
        return True


def setup_logging(debug=False, log_file=None, secrets=()):
    """Configure console + optional file logging."""
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Handlers from a previous invocation in the same process
    for handler in list(logger.handlers):
        if getattr(handler, "_space_migrate", False):
            logger.removeHandler(handler)
            handler.close()

    REDACT_PATTERNS.clear()
    for key in SECRET_ENV_KEYS:
        val = os.getenv(key)
        if val:
            REDACT_PATTERNS.append(val)
    REDACT_PATTERNS.extend(s for s in secrets if s)

    redact = RedactFilter()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    console.addFilter(redact)
    console._space_migrate = True
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        fh.addFilter(redact)
        fh._space_migrate = True
        logger.addHandler(fh)

    return logger


log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_FAILURE = 2
EXIT_CONFIG = 3
EXIT_AUTH = 4

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class MigrationError(Exception):
    """Base class for migration failures."""


class ContentUnavailableError(MigrationError):
    """A document has no exportable body."""


class UserNotFoundError(MigrationError):
    """A Confluence profile page did not describe a user."""


class ConfigurationError(click.ClickException):
    exit_code = EXIT_CONFIG


class AuthenticationError(click.ClickException):
    exit_code = EXIT_AUTH


class MigrationAborted(click.ClickException):
    exit_code = EXIT_FAILURE


def build_auth(username, password):
    """Return a basic-auth tuple, or None for anonymous access."""
    if username and password:
        return (username, password)
    if not username and not password:
        return None
    raise ConfigurationError("Confluence username and password must be specified together.")


def normalize_url(url):
    """Prepend https:// to bare host names and strip the trailing slash."""
    url = url.strip()
    if not url.startswith("http"):
        url = f"https://{url}"
    return url.rstrip("/")


# ---------------------------------------------------------------------------
# MigrationState
# ---------------------------------------------------------------------------

STATE_FILE = ".migration-state.json"

STATUS_DISCOVERED = "discovered"
STATUS_FOLDER_RESOLVED = "folder_resolved"
STATUS_PLACEHOLDER = "placeholder_created"
STATUS_CONVERTED = "converted"
STATUS_PATCHED = "patched"
STATUS_FAILED = "failed"

STATUSES = (
    STATUS_DISCOVERED,
    STATUS_FOLDER_RESOLVED,
    STATUS_PLACEHOLDER,
    STATUS_CONVERTED,
    STATUS_PATCHED,
    STATUS_FAILED,
)


class MigrationState:
    """Persistent per-document migration ledger backed by a JSON file."""

    def __init__(self, path=None):
        self.path = Path(path if path is not None else STATE_FILE)
        self.pages = {}

    def load(self):
        if self.path.exists():
            self.pages = json.loads(self.path.read_text(encoding="utf-8"))
        return self

    def save(self):
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self.pages, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)

    def clear(self):
        self.pages = {}
        if self.path.exists():
            self.path.unlink()
        return self

    def get_page(self, source_id):
        return self.pages.get(str(source_id))

    def set_page(self, source_id, data):
        self.pages[str(source_id)] = data
        self.save()

    def update_page(self, source_id, **fields):
        record = self.pages.setdefault(str(source_id), {"source_id": str(source_id)})
        record.update(fields)
        self.save()
        return record

    def get_pages_by_status(self, status):
        return {pid: p for pid, p in self.pages.items() if p.get("status") == status}

    def summary(self):
        counts = {}
        for p in self.pages.values():
            s = p.get("status", "unknown")
            counts[s] = counts.get(s, 0) + 1
        return counts

    @staticmethod
    def new_page_record(source_id, title, slug=None):
        return {
            "source_id": str(source_id),
            "title": title,
            "slug": slug,
            "status": STATUS_DISCOVERED,
            "folder_id": None,
            "target_id": None,
            "alias": None,
            "introduction_pending": False,
            "error": None,
        }


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class RestClient:
    """requests.Session wrapper with retry + backoff on 429/5xx."""

    INITIAL_BACKOFF = 1  # seconds

    def __init__(self, base_url, max_retries=5):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.session = requests.Session()

    def _url(self, path):
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(self, method, url, **kwargs):
        url = self._url(url)
        attempts = self.max_retries + 1
        backoff = self.INITIAL_BACKOFF
        for attempt in range(1, attempts + 1):
            log.debug("%s %s (attempt %d)", method, url, attempt)
            resp = self.session.request(method, url, **kwargs)

            retryable = resp.status_code == 429 or resp.status_code >= 500
            if retryable and attempt < attempts:
                try:
                    retry_after = int(resp.headers.get("Retry-After", backoff))
                except (TypeError, ValueError):
                    retry_after = backoff
                log.warning("HTTP %d on %s, retrying in %ds", resp.status_code, url, retry_after)
                time.sleep(retry_after)
                backoff = min(backoff * 2, 32)
                continue

            resp.raise_for_status()
            return resp

    def _get_json(self, url, **params):
        return self._request("GET", url, params=params).json()


# ---------------------------------------------------------------------------
# Confluence (source)
# ---------------------------------------------------------------------------

VIEW_PAGE_PATH = "/pages/viewpage.action"


@dataclass
class SourceDocument:
    """A Confluence page; `body` is only present when fetched with its export view."""

    id: str
    title: str
    ancestors: list = field(default_factory=list)
    webui: str = None
    body: str = None

    @property
    def slug(self):
        if not self.webui:
            return None
        path = urlparse(self.webui).path.rstrip("/")
        if not path or path.endswith(VIEW_PAGE_PATH):
            return None
        return unquote_plus(path.rsplit("/", 1)[-1])

    @classmethod
    def from_json(cls, data):
        body = ((data.get("body") or {}).get("export_view") or {}).get("value")
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            ancestors=[a.get("title", "") for a in data.get("ancestors") or []],
            webui=(data.get("_links") or {}).get("webui"),
            body=body,
        )


@dataclass
class UserData:
    full_name: str
    email: str = None


class ConfluenceClient(RestClient):
    """Confluence Server REST API client."""

    PAGE_SIZE = 25

    def __init__(self, base_url, auth=None, max_retries=5):
        super().__init__(base_url, max_retries)
        if auth:
            self.session.auth = auth
        self.session.headers.update({"Accept": "application/json"})

    # -- pages ------------------------------------------------------------

    def get_documents(self, space_key, limit=PAGE_SIZE):
        """Yield every page of a space (metadata and ancestors, no body)."""
        params = {"spaceKey": space_key, "expand": "ancestors", "limit": limit, "start": 0}
        while True:
            data = self._get_json("/rest/api/content", **params)
            results = data.get("results", [])
            if not results:
                return
            for item in results:
                yield SourceDocument.from_json(item)
            next_link = (data.get("_links") or {}).get("next")
            if not next_link:
                return
            params = self._next_page_params(params, next_link, len(results))

    @staticmethod
    def _next_page_params(params, next_link, returned):
        """Opaque cursors are echoed back; offsets advance by the items actually returned."""
        query = {k: v[0] for k, v in parse_qs(urlparse(next_link).query).items()}
        params = dict(params)
        if query.get("cursor"):
            params["cursor"] = query["cursor"]
            params.pop("start", None)
        else:
            params["start"] = int(params.get("start", 0)) + returned
        if query.get("limit"):
            params["limit"] = int(query["limit"])
        return params

    def get_document_children(self, document_id):
        data = self._get_json(f"/rest/api/content/{document_id}/child/page")
        return [SourceDocument.from_json(item) for item in data.get("results", [])]

    def get_document(self, document_id):
        data = self._get_json(f"/rest/api/content/{document_id}", expand="body.export_view")
        return SourceDocument.from_json(data)

    # -- users ------------------------------------------------------------

    def get_user_data(self, username):
        """Scrape a profile page for the user's full name and e-mail."""
        resp = self._request(
            "GET", f"/display/~{quote(username)}", headers={"Accept": "text/html"}
        )
        soup = BeautifulSoup(resp.text, "html.parser")
        full_name = soup.find(id="fullName")
        if full_name is None:
            raise UserNotFoundError(f"User {username} not found")
        email = soup.find(id="email")
        email = email.get_text(strip=True) if email is not None else None
        if not email or email == "hidden":
            email = None
        return UserData(full_name.get_text(strip=True), email)

    # -- attachments ------------------------------------------------------

    def download(self, url, fileobj):
        """Stream an authenticated download into an open binary file."""
        url = urljoin(self.base_url + "/", url)
        resp = self._request("GET", url, stream=True)
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            if chunk:
                fileobj.write(chunk)


# ---------------------------------------------------------------------------
# Space (target)
# ---------------------------------------------------------------------------


@dataclass
class TargetFolder:
    id: str
    name: str
    parent: "TargetFolder" = None

    @property
    def identifier(self):
        return f"id:{self.id}"


@dataclass
class TargetDocument:
    id: str
    alias: str
    folder: TargetFolder = None


def folder_identifier(folder):
    """Space folder identifier; None stands for the project's root folder."""
    return "root" if folder is None else folder.identifier


def _markdown_content(markdown):
    return {"className": "MdTextDocumentContent", "markdown": markdown}


class SpaceClient(RestClient):
    """JetBrains Space HTTP API client for project documents."""

    def __init__(self, server_url, token, project_key, max_retries=5):
        super().__init__(server_url, max_retries)
        self.project_key = project_key
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        })

    @property
    def _documents_api(self):
        return f"/api/http/projects/key:{quote(self.project_key)}/documents"

    # -- folders ----------------------------------------------------------

    def list_subfolders(self, parent):
        data = self._get_json(f"{self._documents_api}/folders/{folder_identifier(parent)}/subfolders")
        return [
            TargetFolder(id=f["id"], name=f.get("name", ""), parent=parent)
            for f in data.get("data", [])
        ]

    def create_folder(self, name, parent):
        data = self._request(
            "POST",
            f"{self._documents_api}/folders",
            json={"name": name, "parentFolder": folder_identifier(parent)},
        ).json()
        return TargetFolder(id=data["id"], name=data.get("name", name), parent=parent)

    def set_folder_introduction(self, folder, document_id):
        self._request(
            "POST",
            f"{self._documents_api}/folders/{folder_identifier(folder)}/introduction",
            json={"documentId": document_id},
        )

    # -- documents --------------------------------------------------------

    def _create(self, name, folder, body_in):
        data = self._request(
            "POST",
            self._documents_api,
            json={"name": name, "folder": folder_identifier(folder), "bodyIn": body_in},
        ).json()
        return TargetDocument(id=data["id"], alias=data.get("alias"), folder=folder)

    def create_document(self, name, folder, markdown):
        return self._create(name, folder, {
            "className": "TextDocumentBodyCreateTypedIn",
            "docContent": _markdown_content(markdown),
        })

    def create_file_document(self, name, folder, blob_id):
        return self._create(name, folder, {
            "className": "FileDocumentBodyCreateIn",
            "blobId": blob_id,
        })

    def update_document(self, document_id, markdown):
        self._request(
            "PATCH",
            f"{self._documents_api}/id:{document_id}",
            json={"updateIn": {
                "className": "TextDocumentBodyUpdateIn",
                "docContent": _markdown_content(markdown),
            }},
        )

    # -- uploads ----------------------------------------------------------

    def upload_blob(self, path):
        with open(path, "rb") as f:
            resp = self._request("POST", "/storage/blobs", data=f)
        return resp.text.strip().strip('"')

    def upload_image(self, path, filename):
        with open(path, "rb") as f:
            resp = self._request("POST", "/uploads", params={"name": filename}, data=f)
        return resp.text.strip().strip('"')

    # -- team directory ---------------------------------------------------

    def search_profiles(self, query):
        return self._get_json("/api/http/team-directory/profiles", query=query).get("data", [])

    def find_profile_by_email(self, email):
        try:
            return self._get_json(f"/api/http/team-directory/profiles/email:{quote(email)}")
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

    # -- urls -------------------------------------------------------------

    def documents_url(self):
        return f"{self.base_url}/p/{quote(self.project_key)}/documents"

    def document_url(self, container, alias):
        return f"{self.documents_url()}/{quote(container)}/a/{quote(alias)}"

    def user_url(self, username):
        return f"{self.base_url}/m/{quote(username)}"


# ---------------------------------------------------------------------------
# Folder materialization
# ---------------------------------------------------------------------------


class FolderMaterializer:
    """Create-or-reuse Space folders for ancestor chains, memoized by relative path.

    Existing folders are discovered by listing the parent before anything is
    created, so repeated runs land in the same folders without a persisted cache.
    """

    def __init__(self, target, root_name):
        self.target = target
        self.root_name = root_name
        self._cache = {}

    @staticmethod
    def chain_for(root_name, document, is_introduction=False):
        chain = [root_name, *document.ancestors]
        if is_introduction:
            chain.append(document.title)
        return chain

    def folder_for(self, document, is_introduction=False):
        return self.ensure_folder(self.chain_for(self.root_name, document, is_introduction))

    def ensure_folder(self, chain):
        """Return the folder at the end of `chain` (None for an empty chain: the root)."""
        folder = None
        for depth, name in enumerate(chain):
            key = tuple(chain[: depth + 1])
            cached = self._cache.get(key)
            if cached is None:
                cached = self._get_or_create(name, folder)
                self._cache[key] = cached
            folder = cached
        return folder

    def _get_or_create(self, name, parent):
        for existing in self.target.list_subfolders(parent):
            if existing.name == name:
                log.debug("Reusing folder %r (%s)", name, existing.identifier)
                return existing
        log.info("Creating folder %r under %s", name, folder_identifier(parent))
        return self.target.create_folder(name, parent)


# ---------------------------------------------------------------------------
# Alias table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AliasEntry:
    source_id: str
    slug: str
    target_id: str
    alias: str


class AliasTable:
    """Append-only mapping of Confluence pages to created Space documents.

    Slugs are stored and looked up as given; callers pass decoded slugs.
    """

    def __init__(self):
        self._by_id = {}
        self._by_slug = {}

    def register(self, source_id, slug, target_id, alias):
        entry = AliasEntry(str(source_id), slug, target_id, alias)
        if entry.source_id in self._by_id:
            raise ValueError(f"Document {entry.source_id} is already registered")
        self._by_id[entry.source_id] = entry
        if slug:
            self._by_slug.setdefault(slug, entry)
        return entry

    def by_id(self, source_id):
        return self._by_id.get(str(source_id))

    def by_slug(self, slug):
        return self._by_slug.get(slug)

    def __contains__(self, source_id):
        return str(source_id) in self._by_id

    def __len__(self):
        return len(self._by_id)

    def __iter__(self):
        return iter(list(self._by_id.values()))


# ---------------------------------------------------------------------------
# Link resolution
# ---------------------------------------------------------------------------

LINK = "link"
IMAGE = "image"

STATUS_UNKNOWN = "unknown"
STATUS_VALID = "valid"


@dataclass(frozen=True)
class ResolvedLink:
    url: str
    kind: str = LINK
    status: str = STATUS_UNKNOWN

    def with_url(self, url):
        return replace(self, url=url)

    def with_status(self, status):
        return replace(self, status=status)


@contextmanager
def temporary_file(prefix, suffix=None):
    """Yield a fresh temp file path, removed on every exit path."""
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix)
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


class SpaceLinkResolver:
    """Rewrite Confluence-internal links into Space links.

    Rules, first match wins:
      1. foreign host or relative path: unchanged
      2. /pages/viewpage.action?pageId=N: document by source id
      3. /display/~user: Space profile (by e-mail, else a unique name match)
      4. image under /download/attachments: re-uploaded to Space
      5. /display/<SPACE>/<slug>: document by slug
    Anything that fails to resolve is returned unchanged.
    """

    USER_PREFIX = "/display/~"
    ATTACHMENT_PREFIX = "/download/attachments"

    def __init__(self, source, target, source_space_key, aliases):
        self.source = source
        self.target = target
        self.space_key = source_space_key
        self.aliases = aliases
        parsed = urlparse(source.base_url)
        self.source_host = parsed.hostname
        self.source_root = parsed.path.rstrip("/")

    def resolve(self, link):
        try:
            return self._resolve(link)
        except (requests.RequestException, MigrationError, ValueError, OSError) as e:
            log.warning("Leaving link %s unchanged: %s", link.url, e)
            return link

    def _resolve(self, link):
        path = self._source_path(link.url)
        if path is None:
            return link
        if path == VIEW_PAGE_PATH:
            return self._resolve_view_page(link)
        if path.startswith(self.USER_PREFIX):
            return self._resolve_user(link, path)
        if link.kind == IMAGE:
            return self._resolve_image(link, path)

        parts = path.strip("/").split("/")
        if len(parts) < 3 or parts[0] != "display" or parts[1] != self.space_key:
            return link
        entry = self.aliases.by_slug(unquote_plus(parts[2]))
        if entry is None:
            return link
        return self._document_link(link, entry)

    def _source_path(self, url):
        """Path of a link into the Confluence instance, or None for anything else."""
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            if parsed.hostname != self.source_host:
                return None
        elif parsed.scheme or parsed.netloc or not url.startswith("/"):
            return None
        path = parsed.path
        if self.source_root and path.startswith(self.source_root + "/"):
            path = path[len(self.source_root):]
        return path

    def _document_link(self, link, entry):
        url = self.target.document_url(self.space_key, entry.alias)
        return link.with_url(url).with_status(STATUS_VALID)

    def _resolve_view_page(self, link):
        page_ids = parse_qs(urlparse(link.url).query).get("pageId")
        if not page_ids:
            return link
        entry = self.aliases.by_id(page_ids[0])
        if entry is None:
            return link
        return self._document_link(link, entry)

    def _resolve_user(self, link, path):
        username = unquote(path.rstrip("/").rsplit("/", 1)[-1]).lstrip("~")
        user = self.source.get_user_data(username)
        if user.email:
            profile = self.target.find_profile_by_email(user.email)
        else:
            profiles = self.target.search_profiles(user.full_name)
            if len(profiles) > 1:
                log.info("Ambiguous Space profile for %r (%d matches)", user.full_name, len(profiles))
            profile = profiles[0] if len(profiles) == 1 else None
        if not profile or not profile.get("username"):
            return link
        return link.with_url(self.target.user_url(profile["username"])).with_status(STATUS_VALID)

    def _resolve_image(self, link, path):
        if not path.startswith(self.ATTACHMENT_PREFIX):
            return link
        filename = unquote(path.rstrip("/").rsplit("/", 1)[-1])
        with temporary_file("attachments") as tmp:
            with tmp.open("wb") as fh:
                self.source.download(link.url, fh)
            image_id = self.target.upload_image(tmp, filename)
        log.debug("Re-uploaded attachment %s as %s", filename, image_id)
        return link.with_url(f"/d/{image_id}").with_status(STATUS_VALID)


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------


PANEL_TYPES = {"information": "Info", "note": "Note", "warning": "Warning", "tip": "Tip"}


class Converter:
    """Convert Confluence export_view HTML to Space markdown."""

    def __init__(self, resolver=None):
        self.resolver = resolver

    # -- preprocessing ----------------------------------------------------

    def preprocess_html(self, html):
        """Clean Confluence HTML and rewrite its links before markdown conversion."""
        soup = BeautifulSoup(html, "html.parser")

        # Remove attachment management UI + preceding "Attachments" heading
        for el in soup.select("div.plugin_attachments_container"):
            prev = el.previous_sibling
            while prev and not isinstance(prev, Tag):
                prev = prev.previous_sibling
            if prev and prev.name in ("h1", "h2", "h3", "h4", "h5", "h6"):
                if "attachment" in prev.get_text(strip=True).lower():
                    prev.decompose()
            el.decompose()

        # Headings inside table cells break markdown tables
        for cell in soup.find_all(["th", "td"]):
            for heading in cell.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
                strong = soup.new_tag("strong")
                strong.string = heading.get_text()
                heading.replace_with(strong)
            if len(cell.find_all("p")) == 1:
                cell.find("p").unwrap()

        # Info / warning / note / tip panels → blockquotes
        for panel in soup.find_all("div", class_="confluence-information-macro"):
            macro_type = "Note"
            for cls in panel.get("class", []):
                if cls.startswith("confluence-information-macro-"):
                    macro_type = PANEL_TYPES.get(cls.rsplit("-", 1)[-1], macro_type)
            body = panel.find("div", class_="confluence-information-macro-body")
            if body is None:
                continue
            bq = soup.new_tag("blockquote")
            prefix = soup.new_tag("strong")
            prefix.string = f"{macro_type}: "
            bq.append(prefix)
            for child in list(body.children):
                bq.append(child.extract())
            panel.replace_with(bq)

        # Code blocks keep their language hint
        for code_macro in soup.find_all("div", class_="code-block"):
            pre = code_macro.find("pre")
            if pre is None:
                continue
            lang = code_macro.get("data-language", "")
            new_pre = soup.new_tag("pre")
            code_tag = soup.new_tag("code", attrs={"class": f"language-{lang}"} if lang else {})
            code_tag.string = pre.get_text()
            new_pre.append(code_tag)
            code_macro.replace_with(new_pre)

        # Macros keep the content they wrap; only body-less ones become a marker
        for macro in soup.find_all("ac:structured-macro"):
            if macro.parent is None:
                continue
            body = macro.find("ac:rich-text-body")
            if body is None:
                macro.replace_with(Comment(f" Unsupported macro: {macro.get('ac:name', 'unknown')} "))
            else:
                macro.replace_with(body.extract())
                body.unwrap()
        for macro in soup.find_all("div", attrs={"data-macro-name": True}):
            if macro.parent is None:
                continue
            if macro.get_text(strip=True) or macro.find(["a", "img", "table"]):
                macro.unwrap()
            else:
                macro.replace_with(Comment(f" Unsupported macro: {macro['data-macro-name']} "))

        # Inserted text renders as plain text
        for ins in soup.find_all("ins"):
            ins.unwrap()

        for tag in soup.find_all(id=True):
            del tag["id"]

        if self.resolver is not None:
            self._resolve_links(soup)

        return str(soup)

    def _resolve_links(self, soup):
        for tag in soup.find_all(["a", "img"]):
            attr, kind = ("src", IMAGE) if tag.name == "img" else ("href", LINK)
            url = tag.get(attr)
            if not url:
                continue
            resolved = self.resolver.resolve(ResolvedLink(url, kind))
            # Only links the resolver vouched for replace the original
            if resolved.status == STATUS_VALID:
                tag[attr] = resolved.url

    # -- conversion -------------------------------------------------------

    @staticmethod
    def _html2text():
        h2t = html2text.HTML2Text()
        h2t.body_width = 0
        h2t.protect_links = True
        h2t.unicode_snob = True
        h2t.wrap_links = False
        h2t.wrap_list_items = False
        h2t.pad_tables = False
        return h2t

    def html_to_markdown(self, html):
        return self._html2text().handle(html).strip()

    def convert_document(self, document):
        if document.body is None:
            raise ContentUnavailableError(
                f"Can't convert document {document.id} ({document.title!r}) without export view"
            )
        return self.html_to_markdown(self.preprocess_html(document.body))


# ---------------------------------------------------------------------------
# Migrator
# ---------------------------------------------------------------------------

PLACEHOLDER_CONTENT = "Intermediate content"


class Migrator:
    """Two-phase Confluence → Space migration.

    Phase 1 creates a placeholder document for every Confluence page and
    records its alias. Phase 2 only starts once phase 1 has drained, then
    converts each page body (links now resolvable) and patches the document.
    """

    def __init__(self, source, target, space_key, state, fail_fast=False):
        self.source = source
        self.target = target
        self.space_key = space_key
        self.state = state
        self.fail_fast = fail_fast
        self.aliases = AliasTable()
        self.folders = FolderMaterializer(target, space_key)
        self.converter = Converter(SpaceLinkResolver(source, target, space_key, self.aliases))

    def run(self):
        """Run both phases; returns the number of documents that failed in phase 2."""
        self.create_placeholders()
        return self.migrate_contents()

    # -- phase 1 ----------------------------------------------------------

    def create_placeholders(self):
        for document in self.source.get_documents(self.space_key):
            if document.id in self.aliases:
                log.warning("Skipping duplicate document %s (%s)", document.title, document.id)
                continue
            try:
                self.create_placeholder(document)
            except Exception as e:
                raise MigrationError(
                    f"Creating placeholder for {document.title!r} ({document.id}) failed: {e}"
                ) from e
        log.info("Phase 1 complete: %d document(s) registered", len(self.aliases))

    def create_placeholder(self, document):
        if not document.webui:
            raise MigrationError("Can't migrate document without webui link")

        record = self.state.get_page(document.id)
        if record and record.get("target_id") and record.get("alias"):
            log.info("Skipping already created document: %s", document.title)
            if record.get("introduction_pending"):
                self._set_introduction(document, record["target_id"])
            if record.get("status") == STATUS_FOLDER_RESOLVED:
                self.state.update_page(document.id, status=STATUS_PLACEHOLDER)
            self.aliases.register(document.id, document.slug, record["target_id"], record["alias"])
            return

        record = MigrationState.new_page_record(document.id, document.title, document.slug)
        self.state.set_page(document.id, record)

        is_introduction = bool(self.source.get_document_children(document.id))
        folder = self.folders.folder_for(document, is_introduction)
        self.state.update_page(document.id, status=STATUS_FOLDER_RESOLVED, folder_id=folder.id)

        created = self.target.create_document(document.title, folder, PLACEHOLDER_CONTENT)
        # Recorded before anything else can fail so a rerun never creates it twice
        self.state.update_page(
            document.id, target_id=created.id, alias=created.alias,
            introduction_pending=is_introduction,
        )
        if is_introduction:
            self._set_introduction(document, created.id)

        self.state.update_page(document.id, status=STATUS_PLACEHOLDER)
        self.aliases.register(document.id, document.slug, created.id, created.alias)
        log.info("Created placeholder: %s → %s", document.title, created.alias)

    def _set_introduction(self, document, target_id):
        folder = self.folders.folder_for(document, is_introduction=True)
        self.target.set_folder_introduction(folder, target_id)
        self.state.update_page(document.id, introduction_pending=False)

    # -- phase 2 ----------------------------------------------------------

    def migrate_contents(self):
        failures = 0
        for entry in self.aliases:
            record = self.state.get_page(entry.source_id) or {}
            if record.get("status") == STATUS_PATCHED:
                log.info("Skipping already migrated document: %s", record.get("title", entry.source_id))
                continue
            try:
                self.migrate_content(entry)
            except Exception as e:
                self.state.update_page(entry.source_id, status=STATUS_FAILED, error=str(e))
                if self.fail_fast:
                    raise MigrationError(
                        f"Migrating content of document {entry.source_id} failed: {e}"
                    ) from e
                failures += 1
                log.error("Failed to migrate content of document %s: %s", entry.source_id, e)
        log.info("Phase 2 complete: %d failure(s)", failures)
        return failures

    def migrate_content(self, entry):
        document = self.source.get_document(entry.source_id)
        content = self.converter.convert_document(document)
        self.state.update_page(entry.source_id, status=STATUS_CONVERTED)
        self.target.update_document(entry.target_id, content)
        self.state.update_page(entry.source_id, status=STATUS_PATCHED, error=None)
        log.info("Migrated: %s", document.title)


# ---------------------------------------------------------------------------
# Local folder import
# ---------------------------------------------------------------------------


class FolderImporter:
    """Import a directory tree: directories become folders, files become documents."""

    def __init__(self, target, base_folder):
        self.target = target
        self.base_folder = Path(base_folder).resolve()
        self.folders = FolderMaterializer(target, self.base_folder.name)

    def _chain(self, directory):
        return [self.base_folder.name, *directory.relative_to(self.base_folder).parts]

    def walk(self):
        """Yield (directory, files) pairs, parents first, in sorted order."""
        for dirpath, dirnames, filenames in os.walk(self.base_folder):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            directory = Path(dirpath)
            files = [directory / f for f in sorted(filenames) if not f.startswith(".")]
            yield directory, files

    def run(self, dry_run=False):
        counts = {"folders": 0, "documents": 0, "files": 0}
        for directory, files in self.walk():
            chain = self._chain(directory)
            counts["folders"] += 1
            if dry_run:
                click.echo(f"  [folder] {'/'.join(chain)}")
                for path in files:
                    click.echo(f"    {path.name}")
                continue

            folder = self.folders.ensure_folder(chain)
            for path in files:
                if path.suffix == ".md":
                    self.target.create_document(path.name, folder, path.read_text(encoding="utf-8"))
                    counts["documents"] += 1
                else:
                    blob_id = self.target.upload_blob(path)
                    self.target.create_file_document(path.name, folder, blob_id)
                    counts["files"] += 1
                log.info("Imported: %s", path.relative_to(self.base_folder))
        return counts


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def determine_exit_code(state):
    """Determine process exit code from migration state."""
    summary = state.summary()
    total = sum(summary.values())
    if total == 0:
        return EXIT_SUCCESS
    failed = summary.get(STATUS_FAILED, 0)
    if failed == total:
        return EXIT_FAILURE
    if failed > 0:
        return EXIT_PARTIAL
    return EXIT_SUCCESS


def abort(operation, error):
    """Turn an unrecovered error into a click exception naming the operation."""
    cause = error.__cause__ if error.__cause__ is not None else error
    if isinstance(cause, requests.HTTPError) and cause.response is not None:
        if cause.response.status_code == 401:
            return AuthenticationError(f"{operation} failed: authentication rejected ({cause})")
    return MigrationAborted(f"{operation} failed: {error}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

COMMON_OPTIONS = [
    click.option("--dry-run", is_flag=True, help="Preview actions without making changes."),
    click.option("--debug", is_flag=True, help="Enable debug logging."),
    click.option("--log-file", type=click.Path(), default=None, help="Log file path."),
]

TARGET_OPTIONS = [
    click.option("--space-server", envvar="SPACE_SERVER", required=True,
                 help="URL of the Space instance that you want to import into."),
    click.option("--space-token", envvar="SPACE_TOKEN", required=True,
                 help="Personal token for a Space account allowed to edit project documents."),
    click.option("--space-project-key", envvar="SPACE_PROJECT_KEY", required=True,
                 help="Key of the project in Space."),
    click.option("--max-retries", type=click.IntRange(min=0), default=5, show_default=True,
                 help="Retries for rate-limited or failing HTTP requests."),
]

CONFLUENCE_OPTIONS = [
    click.option("--confluence-host", envvar="CONFLUENCE_HOST", required=True,
                 help="Host of the Confluence instance."),
    click.option("--confluence-space-key", envvar="CONFLUENCE_SPACE_KEY", required=True,
                 help="Key of the space in Confluence."),
    click.option("--confluence-username", envvar="CONFLUENCE_USERNAME", default=None,
                 help="Username to authorize in Confluence."),
    click.option("--confluence-password", envvar="CONFLUENCE_PASSWORD", default=None,
                 help="Password to authorize in Confluence."),
]

STATE_OPTIONS = [
    click.option("--state-file", type=click.Path(dir_okay=False), default=None,
                 help=f"Migration state file (default: {STATE_FILE})."),
    click.option("--restart", is_flag=True, help="Discard saved progress and start over."),
    click.option("--fail-fast", is_flag=True, help="Abort on the first document that fails."),
]


def add_options(options):
    """Decorator to apply a list of click options."""
    def decorator(func):
        for option in reversed(options):
            func = option(func)
        return func
    return decorator


@click.group()
@click.version_option(version=__version__)
def cli():
    """Confluence → JetBrains Space documents migration tool."""
    pass


# -- confluence -----------------------------------------------------------


@cli.command()
@add_options(CONFLUENCE_OPTIONS)
@add_options(TARGET_OPTIONS)
@add_options(STATE_OPTIONS)
@add_options(COMMON_OPTIONS)
def confluence(confluence_host, confluence_space_key, confluence_username, confluence_password,
               space_server, space_token, space_project_key, max_retries,
               state_file, restart, fail_fast, dry_run, debug, log_file):
    """Migrate a Confluence space into Space project documents."""
    setup_logging(debug, log_file, secrets=(confluence_password, space_token))

    auth = build_auth(confluence_username, confluence_password)
    source = ConfluenceClient(normalize_url(confluence_host), auth, max_retries=max_retries)

    if dry_run:
        click.echo(f"\n[DRY RUN] Confluence space: {confluence_space_key}")
        try:
            for document in source.get_documents(confluence_space_key):
                is_introduction = bool(source.get_document_children(document.id))
                chain = FolderMaterializer.chain_for(confluence_space_key, document, is_introduction)
                marker = " (folder introduction)" if is_introduction else ""
                click.echo(f"  {'/'.join(chain)}/{document.title} (ID: {document.id}){marker}")
        except requests.RequestException as e:
            raise abort("Listing Confluence pages", e) from e
        sys.exit(EXIT_SUCCESS)

    target = SpaceClient(normalize_url(space_server), space_token, space_project_key,
                         max_retries=max_retries)

    state = MigrationState(state_file)
    if restart:
        state.clear()
    else:
        state.load()

    migrator = Migrator(source, target, confluence_space_key, state, fail_fast=fail_fast)
    try:
        failures = migrator.run()
    except (MigrationError, requests.RequestException) as e:
        raise abort("Migration", e) from e

    click.echo(f"\nMigration complete: {state.summary()}")
    if failures:
        click.echo(f"{failures} document(s) failed, see 'status' for details.")
        sys.exit(determine_exit_code(state))

    click.echo(f"Import was successful. Open Space documents: {target.documents_url()}")
    sys.exit(EXIT_SUCCESS)


# -- folder ---------------------------------------------------------------


@cli.command()
@click.option("--folder", "folder_path", required=True,
              type=click.Path(exists=True, file_okay=False),
              help="Path to the folder with files.")
@add_options(TARGET_OPTIONS)
@add_options(COMMON_OPTIONS)
def folder(folder_path, space_server, space_token, space_project_key, max_retries,
           dry_run, debug, log_file):
    """Import a local folder tree into Space project documents."""
    setup_logging(debug, log_file, secrets=(space_token,))

    target = SpaceClient(normalize_url(space_server), space_token, space_project_key,
                         max_retries=max_retries)
    importer = FolderImporter(target, folder_path)

    if dry_run:
        click.echo(f"\n[DRY RUN] Folder: {importer.base_folder}")
        importer.run(dry_run=True)
        sys.exit(EXIT_SUCCESS)

    try:
        counts = importer.run()
    except (requests.RequestException, OSError) as e:
        raise abort("Folder import", e) from e

    click.echo(
        f"\nImported {counts['documents']} document(s) and {counts['files']} file(s) "
        f"into {counts['folders']} folder(s)."
    )
    click.echo(f"Import was successful. Open Space documents: {target.documents_url()}")
    sys.exit(EXIT_SUCCESS)


# -- status ---------------------------------------------------------------


@cli.command()
@click.option("--state-file", type=click.Path(dir_okay=False), default=None,
              help=f"Migration state file (default: {STATE_FILE}).")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
def status(state_file, debug):
    """Show migration progress."""
    setup_logging(debug)

    state = MigrationState(state_file).load()

    if not state.pages:
        click.echo("No migration state found. Run 'confluence' first.")
        sys.exit(EXIT_SUCCESS)

    summary = state.summary()
    total = sum(summary.values())

    click.echo("\nMigration Status")
    click.echo("=" * 40)
    for status_name in STATUSES:
        count = summary.get(status_name, 0)
        pct = (count / total * 100) if total else 0
        bar = "#" * int(pct / 5)
        click.echo(f"  {status_name:<20} {count:>4}  {pct:5.1f}%  {bar}")
    click.echo(f"  {'total':<20} {total:>4}")

    failed = state.get_pages_by_status(STATUS_FAILED)
    if failed:
        click.echo("\nFailed documents:")
        for pid, p in failed.items():
            click.echo(f"  [{pid}] {p.get('title', '?')}: {p.get('error') or 'unknown error'}")

    sys.exit(EXIT_SUCCESS)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli()
