"""Tests for the Gmail API client.

All tests use mocks; the client's ``_service`` is replaced so no
credentials or network are needed.
"""

from __future__ import annotations

import base64
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from mailledger.gmail.client import (
    GmailClient,
    MailAccessError,
    MailAuthError,
    MessageFetchError,
    _decode_body,
    _extract_body,
    build_search_queries,
    message_from_gmail,
)


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode()


def _client(service: MagicMock) -> GmailClient:
    client = GmailClient("/fake/sa.json", "user@example.com", max_results=2)
    client._service = service  # Bypass auth
    return client


# ── Body extraction tests ────────────────────────────────


class TestExtractBody:
    def test_single_part_text(self):
        msg = {"payload": {"body": {"data": _b64("Hello World")}}}
        assert _extract_body(msg) == "Hello World"

    def test_multipart_prefers_plain(self):
        msg = {
            "payload": {
                "body": {},
                "parts": [
                    {"mimeType": "text/html", "body": {"data": _b64("<p>HTML</p>")}},
                    {"mimeType": "text/plain", "body": {"data": _b64("Plain text")}},
                ],
            }
        }
        assert _extract_body(msg) == "Plain text"

    def test_nested_multipart_falls_back_to_html(self):
        msg = {
            "payload": {
                "parts": [
                    {
                        "mimeType": "multipart/alternative",
                        "body": {},
                        "parts": [
                            {"mimeType": "text/html", "body": {"data": _b64("<b>Rs 500</b>")}},
                        ],
                    },
                ],
            }
        }
        assert _extract_body(msg) == "<b>Rs 500</b>"

    def test_empty_payload(self):
        assert _extract_body({"payload": {}}) == ""


class TestDecodeBody:
    def test_unicode_content(self):
        assert _decode_body(_b64("₹1,200 débité")) == "₹1,200 débité"

    def test_missing_padding(self):
        encoded = _b64("abcd!").rstrip("=")
        assert _decode_body(encoded) == "abcd!"


class TestMessageFromGmail:
    def test_headers_and_fields(self):
        msg = {
            "id": "m1",
            "threadId": "t1",
            "snippet": "Rs 500 debited",
            "internalDate": "1705312800000",
            "payload": {
                "headers": [
                    {"name": "from", "value": "HDFC <alerts@hdfcbank.net>"},
                    {"name": "Subject", "value": "Debit alert"},
                ],
                "body": {"data": _b64("Rs 500 debited from a/c")},
            },
        }
        message = message_from_gmail(msg)
        assert message.id == "m1"
        assert message.thread_id == "t1"
        assert message.sender == "HDFC <alerts@hdfcbank.net>"
        assert message.subject == "Debit alert"
        assert message.body == "Rs 500 debited from a/c"
        assert message.received_date == "2024-01-15"

    def test_missing_headers(self):
        message = message_from_gmail({"id": "m2", "payload": {}})
        assert message.sender == ""
        assert message.subject == ""


# ── Search query construction tests ──────────────────────


class TestBuildSearchQueries:
    def test_date_restriction(self):
        queries = build_search_queries(30, today=datetime(2024, 1, 31))
        assert queries
        assert all(q.endswith("after:2024/01/01") for q in queries)

    def test_broad_set_is_larger(self):
        today = datetime(2024, 1, 31)
        assert len(build_search_queries(7, broad=True, today=today)) > len(
            build_search_queries(7, today=today)
        )


class TestListCandidateMessageIds:
    def test_paginates_and_deduplicates(self):
        service = MagicMock()
        service.users().messages().list().execute.side_effect = [
            {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
            {"messages": [{"id": "c"}]},
            {"messages": [{"id": "b"}, {"id": "d"}]},
        ]
        ids = _client(service).list_candidate_message_ids(["q1", "q2"])

        assert ids == ["a", "b", "c", "d"]
        calls = service.users().messages().list.call_args_list
        assert {"userId": "me", "q": "q1", "maxResults": 2, "pageToken": "p2"} in [
            c.kwargs for c in calls
        ]

    def test_no_messages(self):
        service = MagicMock()
        service.users().messages().list().execute.return_value = {}
        assert _client(service).list_candidate_message_ids(["q1"]) == []

    def test_api_error_raises_access_error(self):
        service = MagicMock()
        service.users().messages().list().execute.side_effect = Exception("quota")
        with pytest.raises(MailAccessError, match="quota"):
            _client(service).list_candidate_message_ids(["q1"])

    def test_missing_credentials_raise_auth_error(self):
        client = GmailClient()
        with pytest.raises(MailAuthError):
            client.list_candidate_message_ids(["q1"])

    def test_unreadable_token_file_raises_auth_error(self, tmp_path):
        client = GmailClient(token_file=str(tmp_path / "missing.json"))
        with pytest.raises(MailAuthError):
            client.list_candidate_message_ids(["q1"])


class TestFetchFullMessage:
    def test_fetches_and_converts(self):
        service = MagicMock()
        service.users().messages().get().execute.return_value = {
            "id": "msg123",
            "payload": {"body": {"data": _b64("Receipt body text")}},
        }
        message = _client(service).fetch_full_message("msg123")

        assert message.id == "msg123"
        assert message.body == "Receipt body text"
        service.users().messages().get.assert_called_with(
            userId="me", id="msg123", format="full",
        )

    def test_undecodable_body_raises_fetch_error(self):
        service = MagicMock()
        service.users().messages().get().execute.return_value = {
            "id": "msg123",
            "payload": {"body": {"data": "A"}},
        }
        with pytest.raises(MessageFetchError, match="msg123"):
            _client(service).fetch_full_message("msg123")

    def test_api_error_raises_fetch_error(self):
        service = MagicMock()
        service.users().messages().get().execute.side_effect = Exception("err")
        with pytest.raises(MessageFetchError, match="msg123"):
            _client(service).fetch_full_message("msg123")
