"""
Unit tests for AdminRestClient.
"""

import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import google.auth.exceptions
import requests

from sdpctl.clients import AdminRestClient, BearerTokenCredentials
from sdpctl.context import RunContext
from sdpctl.errors import (
    APIError,
    CanceledByContext,
    NotFoundError,
    TokenExpiredError,
    TransportError,
)
from sdpctl.models import Appliance, FileStatus, UpgradeStatus


def response(status_code=200, body=None, headers=None, content=b"{}"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    resp.headers = headers or {}
    resp.content = content if body is None else b"x"
    resp.reason = "Reason"
    resp.text = ""
    return resp


class TestAdminRestClient(unittest.TestCase):
    """Test AdminRestClient REST API interactions."""

    def setUp(self):
        """Set up test fixtures."""
        with patch("sdpctl.clients.AuthorizedSession"):
            self.client = AdminRestClient(
                "https://ctrl.example.com:8443/admin/", "token", peer_version=18
            )
        self.session = MagicMock()
        self.client.session = self.session

    def last_call(self):
        args, kwargs = self.session.request.call_args
        return args[0], args[1], kwargs

    def test_client_initialization(self):
        """Test client is properly initialised."""
        self.assertEqual(self.client.base_url, "https://ctrl.example.com:8443/admin")
        self.assertEqual(self.client.timeout_s, 60)
        self.assertEqual(self.client.credentials.token, "token")

    @patch("sdpctl.clients.AuthorizedSession")
    def test_session_does_not_refresh_on_401(self, mock_session_class):
        AdminRestClient("https://ctrl:8443/admin", "token", ca_cert="/tmp/ca.pem")
        _, kwargs = mock_session_class.call_args
        self.assertEqual(kwargs["refresh_status_codes"], ())
        self.assertEqual(mock_session_class.return_value.verify, "/tmp/ca.pem")

    def test_credentials_never_refresh(self):
        with self.assertRaises(google.auth.exceptions.RefreshError):
            BearerTokenCredentials("t").refresh(None)

    def test_accept_header(self):
        """Test the peer version is negotiated through the Accept header."""
        self.assertEqual(self.client.accept_header(), "application/vnd.appgate.peer-v18+json")
        self.client.peer_version = 15
        self.assertEqual(self.client.accept_header("gpg"), "application/vnd.appgate.peer-v15+gpg")

    def test_list_appliances(self):
        """Test listing appliances."""
        self.session.request.return_value = response(
            body={"data": [{"id": "a1", "name": "gw", "gateway": {"enabled": True}}]}
        )
        appliances = self.client.list_appliances()
        self.assertEqual(len(appliances), 1)
        self.assertEqual(appliances[0].name, "gw")
        method, url, kwargs = self.last_call()
        self.assertEqual(method, "GET")
        self.assertEqual(url, "https://ctrl.example.com:8443/admin/appliances")
        self.assertEqual(kwargs["params"], {"orderBy": "name"})
        self.assertEqual(kwargs["headers"]["Accept"], "application/vnd.appgate.peer-v18+json")

    def test_stats_endpoint_by_peer_version(self):
        """Test the stats path switches at peer version 18."""
        self.session.request.return_value = response(
            body={"data": [{"id": "a1", "status": "healthy", "applianceVersion": "6.2.1"}]}
        )
        snapshot = self.client.stats()
        self.assertEqual(snapshot.get("a1").version, "6.2.1")
        self.assertTrue(self.last_call()[1].endswith("/appliances/status"))

        self.client.peer_version = 17
        self.client.stats()
        self.assertTrue(self.last_call()[1].endswith("/stats/appliances"))

    def test_upgrade_status(self):
        self.session.request.return_value = response(body={"status": "ready", "details": "6.2.1"})
        state = self.client.upgrade_status("a1", timeout=5)
        self.assertEqual(state.status, UpgradeStatus.READY)
        self.assertEqual(self.last_call()[2]["timeout"], 5)

    def test_prepare_upgrade(self):
        """Test prepare sends the image URL and returns the change id."""
        self.session.request.return_value = response(body={"changeId": "chg-1"})
        change = self.client.prepare_upgrade("a1", "controller://ctrl/x.img.zip", True)
        self.assertEqual(change, "chg-1")
        method, url, kwargs = self.last_call()
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/appliances/a1/upgrade/prepare"))
        self.assertEqual(
            kwargs["json"], {"imageUrl": "controller://ctrl/x.img.zip", "devKeyring": True}
        )

    def test_prepare_upgrade_conflict(self):
        """Test a 409 is annotated with the appliance."""
        self.session.request.return_value = response(409, body={"message": "busy"})
        with self.assertRaises(APIError) as cm:
            self.client.prepare_upgrade("a1", "https://x/y-6.2.1.img.zip")
        self.assertEqual(cm.exception.status, 409)
        self.assertIn("upgrade in progress on a1", str(cm.exception))

    def test_complete_upgrade(self):
        self.session.request.return_value = response(content=b"")
        self.assertIsNone(self.client.complete_upgrade("a1", False))
        self.assertEqual(self.last_call()[2]["json"], {"switchPartition": False})

    def test_not_found(self):
        """Test 404 maps to NotFoundError."""
        self.session.request.return_value = response(404, body={"id": "not-found", "message": "no file"})
        with self.assertRaises(NotFoundError) as cm:
            self.client.file_status("x.img.zip")
        self.assertEqual(cm.exception.code, "not-found")

    def test_server_error_carries_request_id(self):
        """Test the request id is kept for 5xx responses only."""
        self.session.request.return_value = response(
            500,
            body={"message": "oops", "errors": [{"field": "name", "message": "bad"}]},
            headers={"X-Request-Id": "req-9"},
        )
        with self.assertRaises(APIError) as cm:
            self.client.list_appliances()
        self.assertEqual(cm.exception.request_id, "req-9")
        self.assertEqual(cm.exception.field_errors[0].field, "name")

        self.session.request.return_value = response(
            400, body={"message": "bad"}, headers={"X-Request-Id": "req-10"}
        )
        with self.assertRaises(APIError) as cm:
            self.client.list_appliances()
        self.assertIsNone(cm.exception.request_id)

    def test_transport_error(self):
        self.session.request.side_effect = requests.exceptions.ConnectionError("refused")
        with self.assertRaises(TransportError):
            self.client.list_appliances()

    def test_expired_token(self):
        self.session.request.side_effect = google.auth.exceptions.RefreshError("expired")
        with self.assertRaises(TokenExpiredError):
            self.client.list_appliances()

    def test_canceled_context_sends_nothing(self):
        ctx = RunContext()
        ctx.cancel()
        with self.assertRaises(CanceledByContext):
            self.client.list_appliances(ctx)
        self.session.request.assert_not_called()

    def test_timeout_bounded_by_deadline(self):
        """Test a request never outlives the context deadline."""
        self.session.request.return_value = response(body={"data": []})
        self.client.list_appliances(RunContext().with_timeout(2))
        self.assertLessEqual(self.last_call()[2]["timeout"], 2)

    def test_delete_missing_file_is_ignored(self):
        self.session.request.return_value = response(404, body={"message": "gone"})
        self.client.delete_file("x.img.zip")

    def test_file_status(self):
        self.session.request.return_value = response(body={"name": "x.img.zip", "status": "InProgress"})
        self.assertEqual(self.client.file_status("x.img.zip").status, FileStatus.IN_PROGRESS)

    def test_upload_file(self):
        """Test a local file is sent as multipart under 'file'."""
        self.session.request.return_value = response(content=b"")
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "appgate-6.2.1.img.zip")
            with open(path, "wb") as fh:
                fh.write(b"image")
            self.client.upload_file(path)
        method, url, kwargs = self.last_call()
        self.assertEqual(method, "PUT")
        self.assertTrue(url.endswith("/files"))
        self.assertEqual(kwargs["files"]["file"][0], "appgate-6.2.1.img.zip")

    def test_force_disable_controllers(self):
        self.session.request.return_value = response(
            body={"offlineControllers": ["c3"], "changeId": "chg-7"}
        )
        offline, change = self.client.force_disable_controllers("ctrl2", ["c3"])
        self.assertEqual(offline, ["c3"])
        self.assertEqual(change, "chg-7")
        self.assertEqual(self.last_call()[2]["json"], {"hostname": "ctrl2", "controllers": ["c3"]})

    def test_get_change(self):
        self.session.request.return_value = response(
            body={"id": "chg-1", "status": "completed", "result": "success"}
        )
        ticket = self.client.get_change("a1", "chg-1")
        self.assertTrue(ticket.succeeded)

    def test_set_controller_enabled_keeps_other_fields(self):
        appliance = Appliance.from_api(
            {"id": "c2", "name": "ctrl2", "controller": {"enabled": True}, "notes": "keep"}
        )
        self.session.request.return_value = response(content=b"")
        self.client.set_controller_enabled(appliance, False)
        body = self.last_call()[2]["json"]
        self.assertFalse(body["controller"]["enabled"])
        self.assertEqual(body["notes"], "keep")

    def test_download_backup(self):
        """Test a backup is streamed to disk with the gpg media type."""
        resp = response(content=b"")
        resp.iter_content.return_value = [b"abc", b"", b"def"]
        self.session.request.return_value = resp
        with tempfile.TemporaryDirectory() as tmp:
            path = self.client.download_backup("a1", "b1", os.path.join(tmp, "x.bkp"))
            with open(path, "rb") as fh:
                self.assertEqual(fh.read(), b"abcdef")
        kwargs = self.last_call()[2]
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["headers"]["Accept"], "application/vnd.appgate.peer-v18+gpg")


if __name__ == "__main__":
    unittest.main()
