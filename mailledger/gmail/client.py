"""Gmail API client for financial email sync.

Auth: either a service account impersonating a Google Workspace user
(domain-wide delegation) or an authorized-user token file.
Scope: gmail.readonly.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta

from google.oauth2 import credentials as user_credentials
from google.oauth2 import service_account
from googleapiclient.discovery import build

from mailledger.extractors.base import RawMessage

logger = logging.getLogger(__name__)

GMAIL_SCOPE = ["https://www.googleapis.com/auth/gmail.readonly"]

DEFAULT_MAX_RESULTS = 500

# Search queries for financial emails; the broad set is used with the
# Claude extractor, which tolerates more noise
_PATTERN_QUERIES = [
    "subject:(transaction OR payment OR debit OR credit OR receipt OR invoice)",
    "subject:(subscription OR renewal OR billing)",
    "subject:(salary credited OR deposit)",
]
_BROAD_QUERIES = [
    "subject:(transaction OR payment OR receipt OR invoice OR order OR purchase)",
    "subject:(subscription OR renewal OR billing OR charged)",
    "subject:(salary OR credited OR deposit OR refund OR cashback)",
    "from:(bank OR pay OR wallet OR finance)",
    "subject:(statement OR summary)",
]


class MailError(Exception):
    """Base class for mail access failures."""


class MailAuthError(MailError):
    """Credentials missing or rejected."""


class MailAccessError(MailError):
    """Listing candidate messages failed; the whole batch cannot start."""


class MessageFetchError(MailError):
    """A single message could not be fetched."""


def build_search_queries(
    days_back: int = 30,
    broad: bool = False,
    today: datetime | None = None,
) -> list[str]:
    """Financial search queries restricted to the last ``days_back`` days."""
    today = today or datetime.now()
    after = (today - timedelta(days=days_back)).strftime("%Y/%m/%d")
    base = _BROAD_QUERIES if broad else _PATTERN_QUERIES
    return [f"{q} after:{after}" for q in base]


class GmailClient:
    """Gmail API client.

    Args:
        service_account_file: Path to service account JSON key file.
        target_user: Google Workspace email to impersonate.
        token_file: Path to an authorized-user token JSON (used when no
            service account is given).
        max_results: Page size for message listing.
    """

    def __init__(
        self,
        service_account_file: str | None = None,
        target_user: str | None = None,
        token_file: str | None = None,
        max_results: int = DEFAULT_MAX_RESULTS,
    ):
        self.service_account_file = service_account_file
        self.target_user = target_user
        self.token_file = token_file
        self.max_results = max_results
        self._service = None

    @property
    def service(self):
        """Lazy-initialize the Gmail API service."""
        if self._service is None:
            self._service = build(
                "gmail", "v1", credentials=self._credentials(),
                cache_discovery=False,
            )
        return self._service

    def _credentials(self):
        try:
            if self.service_account_file and self.target_user:
                credentials = service_account.Credentials.from_service_account_file(
                    self.service_account_file,
                    scopes=GMAIL_SCOPE,
                )
                return credentials.with_subject(self.target_user)
            if self.token_file:
                return user_credentials.Credentials.from_authorized_user_file(
                    self.token_file, scopes=GMAIL_SCOPE,
                )
        except (OSError, ValueError) as e:
            raise MailAuthError(f"Could not load Gmail credentials: {e}") from e
        raise MailAuthError(
            "Gmail credentials not configured (service account + user, or token file)"
        )

    def list_candidate_message_ids(self, filters: list[str]) -> list[str]:
        """Run every query (all pages) and return unique ids in first-seen order.

        Raises:
            MailAuthError: credentials are missing.
            MailAccessError: any query failed.
        """
        service = self.service
        seen: dict[str, None] = {}
        for query in filters:
            page_token = None
            try:
                while True:
                    kwargs = {"userId": "me", "q": query, "maxResults": self.max_results}
                    if page_token:
                        kwargs["pageToken"] = page_token
                    response = service.users().messages().list(**kwargs).execute()
                    for msg in response.get("messages", []):
                        seen.setdefault(msg["id"], None)
                    page_token = response.get("nextPageToken")
                    if not page_token:
                        break
            except MailError:
                raise
            except Exception as e:
                raise MailAccessError(f"Gmail search failed for {query!r}: {e}") from e

        logger.info("Found %d unique emails across %d queries", len(seen), len(filters))
        return list(seen)

    def fetch_full_message(self, msg_id: str) -> RawMessage:
        """Fetch one message in full format.

        Raises:
            MessageFetchError: the API call failed or the body can't be decoded.
        """
        try:
            msg = (
                self.service.users()
                .messages()
                .get(userId="me", id=msg_id, format="full")
                .execute()
            )
            return message_from_gmail(msg)
        except MailAuthError:
            raise
        except Exception as e:
            raise MessageFetchError(f"Failed to fetch message {msg_id}: {e}") from e


def message_from_gmail(msg: dict) -> RawMessage:
    """Build a RawMessage from a Gmail API ``format=full`` response."""
    return RawMessage(
        id=msg.get("id", ""),
        thread_id=msg.get("threadId"),
        sender=_get_header(msg, "From"),
        subject=_get_header(msg, "Subject"),
        body=_extract_body(msg),
        snippet=msg.get("snippet", ""),
        internal_date=msg.get("internalDate"),
    )


def _get_header(msg: dict, name: str) -> str:
    for header in msg.get("payload", {}).get("headers", []):
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def _extract_body(msg: dict) -> str:
    """Extract text body from Gmail API message response.

    Handles single-part, multipart, and nested multipart messages.
    Prefers text/plain, falls back to text/html.
    """
    payload = msg.get("payload", {})

    if "body" in payload and payload["body"].get("data"):
        return _decode_body(payload["body"]["data"])

    text_plain = None
    text_html = None

    def _search_parts(parts: list[dict]) -> None:
        nonlocal text_plain, text_html
        for part in parts:
            mime = part.get("mimeType", "")
            data = part.get("body", {}).get("data", "")
            if mime == "text/plain" and data and text_plain is None:
                text_plain = data
            elif mime == "text/html" and data and text_html is None:
                text_html = data
            nested = part.get("parts", [])
            if nested:
                _search_parts(nested)

    _search_parts(payload.get("parts", []))

    if text_plain:
        return _decode_body(text_plain)
    if text_html:
        return _decode_body(text_html)
    return ""


def _decode_body(data: str) -> str:
    """Decode base64url-encoded email body (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
