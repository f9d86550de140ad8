"""Gmail API client functions that turn inbox messages into records."""

from __future__ import annotations

import html
import logging
import re
from typing import Callable

from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from phish_guard.constants import BATCH_SIZE, METADATA_HEADERS, PAGE_SIZE
from phish_guard.models import Record

logger = logging.getLogger(__name__)

_FROM_RE = re.compile(r"^(.*?)\s*<([^>]+)>$")


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in (429, 500, 503)


def parse_from_header(from_value: str) -> tuple[str, str]:
    """Parse a From header into (display name, email address).

    Handles formats like:
      "John Doe <john@example.com>" -> ("John Doe", "john@example.com")
      "<john@example.com>"          -> ("", "john@example.com")
      "john@example.com"            -> ("", "john@example.com")
    """
    if not from_value:
        return ("", "")
    m = _FROM_RE.match(from_value.strip())
    if m:
        name = m.group(1).strip().strip('"').strip("'")
        return (name, m.group(2).strip())
    email = from_value.strip().strip("<>")
    return ("", email)


def message_to_record(response: dict) -> Record:
    """Build a Record from a ``messages.get(format="metadata")`` response."""
    headers = {}
    for h in response.get("payload", {}).get("headers", []):
        headers[h["name"].lower()] = h["value"]

    name, email = parse_from_header(headers.get("from", ""))
    _, reply_to = parse_from_header(headers.get("reply-to", ""))

    return Record(
        thread_id=response.get("threadId") or response.get("id"),
        sender_name=name or None,
        sender_email=email.lower() or None,
        subject=headers.get("subject"),
        snippet=html.unescape(response.get("snippet", "")) or None,
        reply_to=reply_to.lower() or None,
    )


def list_message_ids(
    service,
    query: str | None = None,
    max_results: int | None = None,
) -> list[str]:
    """List all inbox message IDs matching the query, handling pagination."""
    ids: list[str] = []
    page_token: str | None = None

    while True:
        kwargs: dict = {
            "userId": "me",
            "maxResults": PAGE_SIZE,
            "labelIds": ["INBOX"],
            "fields": "messages/id,nextPageToken",
        }
        if query:
            kwargs["q"] = query
        if page_token:
            kwargs["pageToken"] = page_token

        resp = service.users().messages().list(**kwargs).execute()
        for msg in resp.get("messages", []):
            ids.append(msg["id"])
            if max_results and len(ids) >= max_results:
                return ids[:max_results]

        page_token = resp.get("nextPageToken")
        if not page_token:
            break

    return ids


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=60),
    stop=stop_after_attempt(5),
    reraise=True,
)
def _execute_batch(batch: BatchHttpRequest) -> None:
    batch.execute()


def fetch_records(
    service,
    message_ids: list[str],
    callback: Callable[[int, int], None] | None = None,
) -> list[Record]:
    """Fetch message metadata in batches and convert each message to a Record."""
    results: list[Record] = []
    total_batches = (len(message_ids) + BATCH_SIZE - 1) // BATCH_SIZE

    def _on_response(request_id, response, exception) -> None:
        if exception is not None:
            logger.warning("Failed to fetch message %s: %s", request_id, exception)
            return
        results.append(message_to_record(response))

    for batch_num in range(total_batches):
        start = batch_num * BATCH_SIZE
        chunk = message_ids[start : start + BATCH_SIZE]

        batch = service.new_batch_http_request(callback=_on_response)
        for msg_id in chunk:
            batch.add(
                service.users().messages().get(
                    userId="me",
                    id=msg_id,
                    format="metadata",
                    metadataHeaders=METADATA_HEADERS,
                ),
                request_id=msg_id,
            )

        _execute_batch(batch)

        if callback:
            callback(batch_num + 1, total_batches)

    return results
