"""
Tests for the external ledger (ERP) client
"""

import pytest
from unittest.mock import Mock, patch
import httpx

from loan_servicing.erp_client import ErpClient, ErpResult, MockErpClient, validate_items


ITEMS = [
    {"account_code": "1100", "debit": "125.00", "credit": "0.00"},
    {"account_code": "1300", "debit": "0.00", "credit": "125.00"},
]

PAYLOAD = {
    "date": "2024-03-01",
    "description": "PAGO_VENTANILLA CR-1",
    "reference": "PAY-1",
    "items": ITEMS,
}


def response(status_code, body=None, text=""):
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.json.return_value = body or {}
    mock_response.text = text
    return mock_response


class TestValidateItems:
    """Test journal line validation"""

    def test_balanced_entry(self):
        assert validate_items(ITEMS) is None

    def test_needs_two_lines(self):
        assert validate_items(ITEMS[:1]) is not None

    def test_unbalanced(self):
        items = [dict(ITEMS[0]), dict(ITEMS[1], credit="120.00")]
        assert "not balanced" in validate_items(items)

    def test_line_with_both_sides(self):
        items = [dict(ITEMS[0], credit="1.00"), ITEMS[1]]
        assert "both" in validate_items(items)

    def test_missing_account(self):
        items = [dict(ITEMS[0], account_code=""), ITEMS[1]]
        assert "account code" in validate_items(items)


class TestErpClient:
    """Test the REST client"""

    def setup_method(self):
        """Set up test fixtures"""
        self.client = ErpClient(base_url="http://erp.local/api/", email="svc@example.com", password="secret")

    def test_not_configured_is_skipped(self):
        client = ErpClient()
        result = client.create_journal_entry(PAYLOAD)
        assert result.skipped
        assert not result.success
        assert client.health_check() is False

    def test_invalid_items_not_sent(self):
        with patch('httpx.Client.post') as mock_post:
            result = self.client.create_journal_entry(dict(PAYLOAD, items=ITEMS[:1]))
        assert not result.success
        mock_post.assert_not_called()

    @patch('httpx.Client.post')
    def test_successful_entry(self, mock_post):
        mock_post.side_effect = [
            response(200, {"data": {"token": "tok-1"}}),
            response(201, {"data": {"journal_entry_id": 77, "total_debit": "125.00"}}),
        ]

        result = self.client.create_journal_entry(PAYLOAD)

        assert result.success
        assert result.status_code == 201
        assert result.journal_entry_id == "77"

        login_call, entry_call = mock_post.call_args_list
        assert login_call[0][0] == "http://erp.local/api/auth/login"
        assert login_call.kwargs["json"] == {"email": "svc@example.com", "password": "secret"}
        assert entry_call[0][0] == "http://erp.local/api/journal-entry"
        assert entry_call.kwargs["headers"]["Authorization"] == "Bearer tok-1"
        assert entry_call.kwargs["json"] == PAYLOAD

    @patch('httpx.Client.post')
    def test_token_is_cached(self, mock_post):
        mock_post.side_effect = [
            response(200, {"data": {"token": "tok-1"}}),
            response(201, {"data": {"journal_entry_id": 1}}),
            response(201, {"data": {"journal_entry_id": 2}}),
        ]
        self.client.create_journal_entry(PAYLOAD)
        self.client.create_journal_entry(PAYLOAD)
        assert mock_post.call_count == 3

    @patch('httpx.Client.post')
    def test_reauthenticates_once_on_401(self, mock_post):
        mock_post.side_effect = [
            response(200, {"data": {"token": "old"}}),
            response(401),
            response(200, {"data": {"token": "new"}}),
            response(201, {"data": {"journal_entry_id": 5}}),
        ]

        result = self.client.create_journal_entry(PAYLOAD)

        assert result.success
        assert mock_post.call_args_list[3].kwargs["headers"]["Authorization"] == "Bearer new"

    @patch('httpx.Client.post')
    def test_second_401_is_an_error(self, mock_post):
        mock_post.side_effect = [
            response(200, {"data": {"token": "old"}}),
            response(401),
            response(200, {"data": {"token": "new"}}),
            response(401),
        ]

        result = self.client.create_journal_entry(PAYLOAD)

        assert not result.success
        assert result.status_code == 401

    @patch('httpx.Client.post')
    def test_validation_message_on_422(self, mock_post):
        mock_post.side_effect = [
            response(200, {"data": {"token": "tok"}}),
            response(422, {"message": "Account 1300 does not exist"}),
        ]

        result = self.client.create_journal_entry(PAYLOAD)

        assert not result.success
        assert result.status_code == 422
        assert result.error == "Account 1300 does not exist"

    @patch('httpx.Client.post')
    def test_server_error(self, mock_post):
        mock_post.side_effect = [
            response(200, {"data": {"token": "tok"}}),
            response(500, text="Internal Server Error"),
        ]
        result = self.client.create_journal_entry(PAYLOAD)
        assert result.error == "HTTP error 500"
        assert not result.skipped

    @patch('httpx.Client.post')
    def test_connection_error(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("Connection refused")

        result = self.client.create_journal_entry(PAYLOAD)

        assert not result.success
        assert result.status_code is None
        assert "Connection refused" in result.error

    @patch('httpx.Client.post')
    def test_failed_login(self, mock_post):
        mock_post.return_value = response(403)
        result = self.client.create_journal_entry(PAYLOAD)
        assert not result.success
        assert self.client.health_check() is False


class TestMockErpClient:
    """Test the in-process double"""

    def test_records_entries(self):
        client = MockErpClient()
        result = client.create_journal_entry(PAYLOAD)
        assert result.success
        assert result.journal_entry_id == "JE-1"
        assert client.sent == [PAYLOAD]

    def test_configured_failure(self):
        client = MockErpClient(fail_with=503)
        result = client.create_journal_entry(PAYLOAD)
        assert result == ErpResult(success=False, status_code=503, error="HTTP error 503")
        assert client.sent == []
