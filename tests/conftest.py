"""Shared fixtures for migration tests."""

from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from space_migrate import (
    MigrationState,
    SourceDocument,
    TargetDocument,
    TargetFolder,
    UserNotFoundError,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"

SOURCE_URL = "https://confluence.example.com"
SPACE_URL = "https://space.example.com"


class FakeConfluence:
    """In-memory Confluence with the ConfluenceClient interface."""

    def __init__(self, documents=(), children=None, users=None, attachments=None,
                 base_url=SOURCE_URL):
        self.base_url = base_url
        self.documents = list(documents)
        self.children = children or {}
        self.users = users or {}
        self.attachments = attachments or {}
        self.fetched = []
        self.broken = set()

    def get_documents(self, space_key):
        for doc in self.documents:
            yield replace(doc, body=None)

    def get_document_children(self, document_id):
        return [d for d in self.documents if d.id in self.children.get(document_id, [])]

    def get_document(self, document_id):
        self.fetched.append(document_id)
        if document_id in self.broken:
            raise requests.HTTPError(f"500 Server Error for document {document_id}")
        return next(d for d in self.documents if d.id == document_id)

    def get_user_data(self, username):
        if username not in self.users:
            raise UserNotFoundError(f"User {username} not found")
        return self.users[username]

    def download(self, url, fileobj):
        for suffix, content in self.attachments.items():
            if url.split("?")[0].endswith(suffix):
                fileobj.write(content)
                return
        raise requests.HTTPError(f"404 Client Error: {url}")


class FakeSpace:
    """In-memory Space project with the SpaceClient interface."""

    def __init__(self, profiles=(), fail_uploads=False):
        self.folders = []
        self.documents = {}
        self.introductions = {}
        self.blobs = {}
        self.profiles = list(profiles)
        self.fail_uploads = fail_uploads
        self.create_folder_calls = 0
        self.list_subfolders_calls = 0
        self.uploaded_paths = []

    @staticmethod
    def _parent_id(folder):
        return None if folder is None else folder.id

    def folder_named(self, name):
        return next(f for f in self.folders if f.name == name)

    def document_named(self, name):
        return next(d for d in self.documents.values() if d["name"] == name)

    def list_subfolders(self, parent):
        self.list_subfolders_calls += 1
        return [f for f in self.folders if self._parent_id(f.parent) == self._parent_id(parent)]

    def create_folder(self, name, parent):
        self.create_folder_calls += 1
        folder = TargetFolder(id=f"folder-{len(self.folders) + 1}", name=name, parent=parent)
        self.folders.append(folder)
        return folder

    def set_folder_introduction(self, folder, document_id):
        self.introductions[folder.id] = document_id

    def _create(self, name, folder, **body):
        n = len(self.documents) + 1
        doc = TargetDocument(id=f"doc-{n}", alias=f"alias-{n}", folder=folder)
        self.documents[doc.id] = {"name": name, "folder": folder, "alias": doc.alias, **body}
        return doc

    def create_document(self, name, folder, markdown):
        return self._create(name, folder, body=markdown, updates=0)

    def create_file_document(self, name, folder, blob_id):
        return self._create(name, folder, blob_id=blob_id)

    def update_document(self, document_id, markdown):
        self.documents[document_id]["body"] = markdown
        self.documents[document_id]["updates"] += 1

    def upload_blob(self, path):
        blob_id = f"blob-{len(self.blobs) + 1}"
        self.blobs[blob_id] = Path(path).read_bytes()
        return blob_id

    def upload_image(self, path, filename):
        self.uploaded_paths.append(Path(path))
        if self.fail_uploads:
            raise requests.HTTPError("503 Server Error: upload failed")
        image_id = f"img-{len(self.blobs) + 1}"
        self.blobs[image_id] = Path(path).read_bytes()
        return image_id

    def search_profiles(self, query):
        return [p for p in self.profiles if p.get("name") == query]

    def find_profile_by_email(self, email):
        return next((p for p in self.profiles if p.get("email") == email), None)

    def documents_url(self):
        return f"{SPACE_URL}/p/PRJ/documents"

    def document_url(self, container, alias):
        return f"{SPACE_URL}/p/PRJ/documents/{container}/a/{alias}"

    def user_url(self, username):
        return f"{SPACE_URL}/m/{username}"


@pytest.fixture
def sample_page_html():
    return (FIXTURES_DIR / "sample_page.html").read_text(encoding="utf-8")


@pytest.fixture
def tmp_state(tmp_path):
    """Return a MigrationState using a temp directory."""
    return MigrationState(path=tmp_path / ".migration-state.json")


@pytest.fixture
def make_document():
    """Factory for SourceDocument with a /display/SPACE/<slug> webui link."""

    def _make(doc_id, title, ancestors=(), body="", slug=None):
        slug = slug or title.replace(" ", "+")
        return SourceDocument(
            id=str(doc_id),
            title=title,
            ancestors=list(ancestors),
            webui=f"/display/SPACE/{slug}",
            body=body,
        )

    return _make


@pytest.fixture
def fake_space():
    return FakeSpace()


@pytest.fixture
def mock_confluence_response():
    """Factory for mock Confluence API responses."""

    def _make(results, next_link=None):
        data = {"results": results}
        if next_link:
            data["_links"] = {"next": next_link}
        else:
            data["_links"] = {}
        return data

    return _make


@pytest.fixture
def json_response():
    """Factory for a successful mocked requests.Response carrying JSON."""

    def _make(data, status_code=200):
        resp = MagicMock()
        resp.status_code = status_code
        resp.json.return_value = data
        resp.raise_for_status = MagicMock()
        return resp

    return _make
