import json

import pytest

from conftest import SITE_URL, make_response
from errors import ConfigError, RequestError, TransportError
from models import Permission
from sharepoint_client import SharePointClient, _with_metadata

API = f"{SITE_URL}/_api"
UPLOADED = "/sites/team/Shared Documents/report.pdf"


@pytest.fixture
def client(credentials, handshake, http, clock):
    return SharePointClient(credentials, handshake=handshake, http=http, clock=clock)


class TestSession:
    def test_construction_does_not_authenticate(self, client, handshake, http):
        assert client.site_url == SITE_URL
        assert handshake.count == 0
        assert http.calls == []

    def test_connect_authenticates_and_fetches_digest(self, client, handshake, digests):
        assert client.connect() is True
        assert handshake.count == 1
        assert digests.count == 1

    def test_refresh_token_forces_new_handshake(self, client, handshake):
        client.connect()
        client.refresh_token()

        assert handshake.count == 2
        assert client.session_manager.state == "authenticated"

    def test_from_env(self, handshake, http):
        environ = {
            "SHAREPOINT_USERNAME": "alice@contoso.com",
            "SHAREPOINT_PASSWORD": "s3cret",
            "SHAREPOINT_SITE_URL": "https://contoso.sharepoint.com/sites/team/",
        }

        client = SharePointClient.from_env(environ, handshake=handshake, http=http)

        assert client.site_url == SITE_URL

    def test_from_env_reports_missing_settings(self):
        with pytest.raises(ConfigError) as exc:
            SharePointClient.from_env({"SHAREPOINT_USERNAME": "alice@contoso.com"})

        assert "SHAREPOINT_PASSWORD" in str(exc.value)
        assert "SHAREPOINT_SITE_URL" in str(exc.value)


class TestUpload:
    """Upload followed by the metadata merge on the returned path"""

    def test_upload_then_attach_metadata(self, client, http, handshake, digests, clock):
        def upload(call):
            # the digest runs out between the two steps
            clock.advance(1800)
            return make_response(200, json_data={"d": {"ServerRelativeUrl": UPLOADED, "Name": "report.pdf"}})

        http.route("POST", "/Files/add", upload)
        http.route("POST", "/ListItemAllFields", make_response(204))

        result = client.upload_file("Shared Documents", b"%PDF-1.7", "report.pdf", {"Title": "Q3 report"})

        assert result["ServerRelativeUrl"] == UPLOADED
        upload_call = http.calls_to("/Files/add")[0]
        assert upload_call.url == (
            f"{API}/web/GetFolderByServerRelativeUrl('/sites/team/Shared Documents')"
            "/Files/add(url='report.pdf',overwrite=true)"
        )
        assert upload_call.headers["Content-Type"] == "application/octet-stream"
        assert upload_call.headers["X-RequestDigest"] == "digest-1"
        assert upload_call.kwargs["data"] == b"%PDF-1.7"

        metadata_call = http.calls_to("/ListItemAllFields")[0]
        assert metadata_call.url == f"{API}/web/GetFileByServerRelativeUrl('{UPLOADED}')/ListItemAllFields"
        assert metadata_call.headers["X-HTTP-Method"] == "MERGE"
        assert metadata_call.headers["X-RequestDigest"] == "digest-2"
        assert json.loads(metadata_call.kwargs["data"]) == {
            "Title": "Q3 report",
            "__metadata": {"type": "SP.ListItem"},
        }
        assert handshake.count == 1
        assert digests.count == 2

    def test_metadata_step_uses_the_session_renewed_during_upload(self, client, http, handshake, digests):
        def merge(call):
            if "fed-1" in call.headers["Cookie"]:
                return make_response(401)
            return make_response(204)

        http.route("POST", "/Files/add", make_response(401),
                   make_response(200, json_data={"d": {"ServerRelativeUrl": UPLOADED}}))
        http.route("POST", "/ListItemAllFields", merge)

        client.upload_file("Shared Documents", b"%PDF-1.7", "report.pdf", {"Title": "Q3 report"})

        merge_calls = http.calls_to("/ListItemAllFields")
        assert len(merge_calls) == 1
        assert merge_calls[0].headers["Cookie"] == "FedAuth=fed-2; rtFa=rt-2"
        assert merge_calls[0].headers["X-RequestDigest"] == "digest-2"
        assert handshake.count == 2
        assert digests.count == 2

    def test_upload_without_metadata_is_one_call(self, client, http):
        http.route("POST", "/Files/add", make_response(200, json_data={"d": {"ServerRelativeUrl": UPLOADED}}))

        client.upload_file("Shared Documents", "plain text", "notes.txt")

        assert len(http.calls_to("/Files/add")) == 1
        assert http.calls_to("/Files/add")[0].kwargs["data"] == b"plain text"
        assert not http.calls_to("/ListItemAllFields")

    def test_invalid_file_name_is_rejected_before_any_call(self, client, http):
        with pytest.raises(ValueError):
            client.upload_file("Shared Documents", b"x", "bad:name.txt")

        assert http.calls == []


class TestUrls:
    def test_list_titles_are_quoted(self, client, http):
        http.route("GET", "/lists/", make_response(json_data={"Title": "O'Brien"}))

        assert client.get_list_by_title("O'Brien") == {"Title": "O'Brien"}
        assert http.calls_to("/lists/")[0].url == f"{API}/web/lists/GetByTitle('O''Brien')"

    def test_site_relative_paths_are_made_server_relative(self, client, http):
        http.route("POST", "/GetFileByServerRelativeUrl", make_response(200))

        client.delete_file("Shared Documents/a.txt")
        client.delete_file("/sites/team/Shared Documents/b.txt")

        first, second = http.calls_to("/GetFileByServerRelativeUrl")
        assert first.url == f"{API}/web/GetFileByServerRelativeUrl('/sites/team/Shared Documents/a.txt')"
        assert second.url == f"{API}/web/GetFileByServerRelativeUrl('/sites/team/Shared Documents/b.txt')"
        assert first.headers["X-HTTP-Method"] == "DELETE"

    def test_get_list_items_is_verbose_and_filtered(self, client, http):
        http.route("GET", "/items", make_response(json_data={"d": {"results": [{"Id": 1}]}}))

        items = client.get_list_items("Tasks", filter="Status eq 'Open'")

        assert items == {"results": [{"Id": 1}]}
        call = http.calls_to("/items")[0]
        assert call.headers["Accept"] == "application/json;odata=verbose"
        assert call.kwargs["params"] == {"$filter": "Status eq 'Open'"}

    def test_create_list_payload(self, client, http):
        http.route("POST", "/web/lists", make_response(201, json_data={"d": {"Title": "Tasks"}}))

        client.create_list("Tasks", "Team tasks")

        body = json.loads(http.calls_to("/web/lists")[0].kwargs["data"])
        assert body["__metadata"] == {"type": "SP.List"}
        assert body["BaseTemplate"] == 100
        assert body["Title"] == "Tasks"

    def test_folder_exists(self, client, http):
        http.route("GET", "/Exists", make_response(json_data={"value": True}))

        assert client.folder_exists("Shared Documents/Reports") is True

    def test_move_folder(self, client, http):
        http.route("POST", "/moveto", make_response(200, json_data={"d": {}}))

        client.move_folder("Shared Documents/Old", "Shared Documents/New")

        assert http.calls_to("/moveto")[0].url == (
            f"{API}/web/GetFolderByServerRelativeUrl('/sites/team/Shared Documents/Old')"
            "/moveto(newUrl='/sites/team/Shared Documents/New',flags=1)"
        )

    def test_download_file_returns_bytes(self, client, http):
        http.route("GET", "/$value", make_response(200, content=b"binary"))

        assert client.download_file("Shared Documents/a.bin") == b"binary"

    def test_request_errors_propagate(self, client, http):
        http.route("GET", "/lists/", make_response(404, json_data={
            "error": {"message": {"value": "List 'Nope' does not exist"}}
        }))

        with pytest.raises(RequestError) as exc:
            client.get_list_by_title("Nope")
        assert exc.value.status_code == 404


class TestPermissions:
    """Role assignment grants and removals"""

    def test_grant_permission_to_users(self, client, http):
        http.route("GET", "getByEmail('alice", make_response(json_data={"Id": 11}))
        http.route("GET", "getByEmail('bob", make_response(json_data={"Id": 12}))
        http.route("POST", "addroleassignment", make_response(200))

        client.grant_permission_to_users("Shared Documents/Team", ["alice@contoso.com", "bob@contoso.com"],
                                         Permission.CONTRIBUTE)

        urls = [call.url for call in http.calls_to("addroleassignment")]
        assert urls == [
            f"{API}/web/GetFolderByServerRelativeUrl('/sites/team/Shared Documents/Team')"
            f"/ListItemAllFields/roleassignments/addroleassignment(principalid={user_id},roledefid=1073741827)"
            for user_id in (11, 12)
        ]

    def test_remove_permissions_from_folder_removes_each_principal_once(self, client, http):
        http.route("GET", "/roleAssignments", make_response(json_data={"d": {"results": [
            {"PrincipalId": 5}, {"PrincipalId": 7}, {"PrincipalId": 5},
        ]}}))
        http.route("POST", "getbyprincipalid(5)", make_response(200))
        http.route("POST", "getbyprincipalid(7)", make_response(404, json_data={
            "error": {"message": {"value": "Can not find the principal with id: 7."}}
        }))

        assert client.remove_permissions_from_folder("Shared Documents/Team") is True

        assert len(http.calls_to("getbyprincipalid(5)")) == 1
        assert len(http.calls_to("getbyprincipalid(7)")) == 1
        assert http.calls_to("getbyprincipalid(5)")[0].headers["X-HTTP-Method"] == "DELETE"

    def test_removal_errors_other_than_not_found_propagate(self, client, http):
        http.route("GET", "/roleAssignments", make_response(json_data={"d": {"results": [{"PrincipalId": 5}]}}))
        http.route("POST", "getbyprincipalid(5)", make_response(400, json_data={
            "error": {"message": {"value": "Bad request"}}
        }))

        with pytest.raises(RequestError):
            client.remove_permissions_from_folder("Shared Documents/Team")

    def test_remove_specific_permission_from_users(self, client, http):
        http.route("GET", "getByEmail", make_response(json_data={"Id": 11}))
        http.route("POST", "removeroleassignment", make_response(200))

        client.remove_permission_to_users("Shared Documents/Team", ["alice@contoso.com", "alice@contoso.com"],
                                          Permission.READ)

        calls = http.calls_to("removeroleassignment")
        assert len(calls) == 1
        assert calls[0].url.endswith("removeroleassignment(principalid=11,roledefid=1073741826)")

    @pytest.mark.parametrize("response", [
        make_response(200),
        make_response(json_data={"Email": "alice@contoso.com"}),
    ])
    def test_user_lookup_without_id_is_transport_error(self, client, http, response):
        http.route("GET", "getByEmail", response)

        with pytest.raises(TransportError) as exc:
            client.get_user_id("alice@contoso.com")

        assert "getByEmail('alice@contoso.com')" in exc.value.url


def test_with_metadata_type_override():
    assert _with_metadata({"type": "SP.Data.TasksListItem", "Title": "x"}, "SP.ListItem") == {
        "Title": "x",
        "__metadata": {"type": "SP.Data.TasksListItem"},
    }
    assert _with_metadata(None, "SP.Folder") == {"__metadata": {"type": "SP.Folder"}}
