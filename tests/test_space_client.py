"""Tests for SpaceClient."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from space_migrate import SpaceClient, TargetFolder, folder_identifier


@pytest.fixture
def space():
    return SpaceClient("https://space.example.com", "tok", "PRJ")


API = "https://space.example.com/api/http/projects/key:PRJ/documents"


class TestSession:
    def test_bearer_token(self, space):
        assert space.session.headers["Authorization"] == "Bearer tok"


class TestFolders:
    def test_folder_identifier(self):
        assert folder_identifier(None) == "root"
        assert folder_identifier(TargetFolder(id="42", name="A")) == "id:42"

    def test_list_subfolders_of_root(self, space, json_response):
        resp = json_response({"data": [{"id": "1", "name": "SPACE"}, {"id": "2", "name": "Other"}]})
        with patch.object(space.session, "request", return_value=resp) as mock_req:
            folders = space.list_subfolders(None)
        assert mock_req.call_args[0][1] == f"{API}/folders/root/subfolders"
        assert [f.name for f in folders] == ["SPACE", "Other"]
        assert folders[0].parent is None

    def test_list_subfolders_of_folder(self, space, json_response):
        parent = TargetFolder(id="9", name="SPACE")
        with patch.object(space.session, "request", return_value=json_response({"data": []})) as mock_req:
            assert space.list_subfolders(parent) == []
        assert mock_req.call_args[0][1] == f"{API}/folders/id:9/subfolders"

    def test_create_folder(self, space, json_response):
        parent = TargetFolder(id="9", name="SPACE")
        with patch.object(space.session, "request",
                          return_value=json_response({"id": "10", "name": "A"})) as mock_req:
            folder = space.create_folder("A", parent)
        assert folder == TargetFolder(id="10", name="A", parent=parent)
        assert mock_req.call_args[0][0] == "POST"
        assert mock_req.call_args.kwargs["json"] == {"name": "A", "parentFolder": "id:9"}

    def test_set_folder_introduction(self, space, json_response):
        folder = TargetFolder(id="10", name="A")
        with patch.object(space.session, "request", return_value=json_response({})) as mock_req:
            space.set_folder_introduction(folder, "doc-1")
        assert mock_req.call_args[0][1] == f"{API}/folders/id:10/introduction"
        assert mock_req.call_args.kwargs["json"] == {"documentId": "doc-1"}


class TestDocuments:
    def test_create_markdown_document(self, space, json_response):
        folder = TargetFolder(id="10", name="A")
        with patch.object(space.session, "request",
                          return_value=json_response({"id": "d1", "alias": "xYz"})) as mock_req:
            doc = space.create_document("Guide", folder, "Intermediate content")
        assert (doc.id, doc.alias) == ("d1", "xYz")
        body = mock_req.call_args.kwargs["json"]
        assert body["name"] == "Guide"
        assert body["folder"] == "id:10"
        assert body["bodyIn"]["docContent"]["markdown"] == "Intermediate content"

    def test_create_file_document(self, space, json_response):
        with patch.object(space.session, "request",
                          return_value=json_response({"id": "d2", "alias": "a2"})) as mock_req:
            space.create_file_document("report.pdf", None, "blob-1")
        body = mock_req.call_args.kwargs["json"]
        assert body["folder"] == "root"
        assert body["bodyIn"] == {"className": "FileDocumentBodyCreateIn", "blobId": "blob-1"}

    def test_update_document(self, space, json_response):
        with patch.object(space.session, "request", return_value=json_response({})) as mock_req:
            space.update_document("d1", "# Final")
        assert mock_req.call_args[0][0] == "PATCH"
        assert mock_req.call_args[0][1] == f"{API}/id:d1"
        assert mock_req.call_args.kwargs["json"]["updateIn"]["docContent"]["markdown"] == "# Final"


class TestUploads:
    def _text_response(self, text):
        resp = MagicMock()
        resp.status_code = 200
        resp.text = text
        resp.raise_for_status = MagicMock()
        return resp

    def test_upload_image(self, space, tmp_path):
        image = tmp_path / "a.png"
        image.write_bytes(b"png")
        with patch.object(space.session, "request",
                          return_value=self._text_response('"img-1"')) as mock_req:
            assert space.upload_image(image, "a.png") == "img-1"
        assert mock_req.call_args[0][1] == "https://space.example.com/uploads"
        assert mock_req.call_args.kwargs["params"] == {"name": "a.png"}

    def test_upload_blob(self, space, tmp_path):
        data = tmp_path / "report.pdf"
        data.write_bytes(b"pdf")
        with patch.object(space.session, "request",
                          return_value=self._text_response("blob-7\n")) as mock_req:
            assert space.upload_blob(data) == "blob-7"
        assert mock_req.call_args[0][1] == "https://space.example.com/storage/blobs"


class TestTeamDirectory:
    def test_search_profiles(self, space, json_response):
        resp = json_response({"data": [{"username": "jane"}]})
        with patch.object(space.session, "request", return_value=resp) as mock_req:
            assert space.search_profiles("Jane Doe") == [{"username": "jane"}]
        assert mock_req.call_args.kwargs["params"] == {"query": "Jane Doe"}

    def test_find_profile_by_email_not_found(self, space):
        missing = MagicMock()
        missing.status_code = 404
        missing.raise_for_status.side_effect = requests.HTTPError("404", response=missing)
        with patch.object(space.session, "request", return_value=missing):
            assert space.find_profile_by_email("ghost@example.com") is None

    def test_find_profile_by_email_server_error_propagates(self):
        space = SpaceClient("https://space.example.com", "tok", "PRJ", max_retries=0)
        broken = MagicMock()
        broken.status_code = 500
        broken.headers = {}
        broken.raise_for_status.side_effect = requests.HTTPError("500", response=broken)
        with patch.object(space.session, "request", return_value=broken):
            with pytest.raises(requests.HTTPError):
                space.find_profile_by_email("jane@example.com")


class TestUrls:
    def test_document_url(self, space):
        assert space.document_url("SPACE", "xYz") == \
            "https://space.example.com/p/PRJ/documents/SPACE/a/xYz"

    def test_user_url(self, space):
        assert space.user_url("jane") == "https://space.example.com/m/jane"

    def test_documents_url(self, space):
        assert space.documents_url() == "https://space.example.com/p/PRJ/documents"
