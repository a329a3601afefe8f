"""Client for the OpenAI thread message listing API."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import openai
from openai import AsyncOpenAI

from thread_relay.errors import InvalidCredential, ThreadNotFound, UpstreamUnavailable
from thread_relay.storage import MessageDraft, MessageRole

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], AsyncOpenAI]


def _extract_text(content: Any) -> str:
    """Return the first text block's value, or an empty string."""

    for block in content or []:
        if getattr(block, "type", None) != "text":
            continue
        text = getattr(block, "text", None)
        value = getattr(text, "value", None)
        return value if isinstance(value, str) else ""
    return ""


def normalize_message(raw: Any) -> MessageDraft:
    """Convert one upstream message object into a MessageDraft."""

    try:
        role = MessageRole(raw.role)
    except ValueError as exc:
        raise UpstreamUnavailable(f"Unexpected message role from upstream: {raw.role!r}") from exc

    return MessageDraft(
        message_id=raw.id,
        role=role,
        content=_extract_text(raw.content),
        timestamp=datetime.fromtimestamp(raw.created_at, tz=timezone.utc),
    )


class UpstreamFetcher:
    """Fetches thread messages with a caller-supplied API key.

    No retries happen here; retry policy belongs to the caller.
    """

    def __init__(self, base_url: Optional[str] = None, client_factory: Optional[ClientFactory] = None):
        """Initialize the fetcher.

        Args:
            base_url: Upstream API base URL (None for the SDK default).
            client_factory: Builds a client for an API key. Defaults to AsyncOpenAI.
        """
        self.base_url = base_url
        self._client_factory = client_factory or self._default_client

    def _default_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key, base_url=self.base_url, max_retries=0)

    async def list_messages(
        self,
        thread_id: str,
        api_key: str,
        *,
        limit: Optional[int] = None,
        order: str = "desc",
    ) -> List[MessageDraft]:
        """List a thread's messages, always returned oldest first.

        Args:
            thread_id: External thread identifier.
            api_key: Bearer credential for the upstream API.
            limit: Page size; None uses the upstream default.
            order: Upstream ordering, "desc" (newest first) or "asc".

        Raises:
            ThreadNotFound: Upstream reported the thread as missing.
            InvalidCredential: Upstream rejected the API key.
            UpstreamUnavailable: Any other upstream or network failure.
        """
        params: dict[str, Any] = {"order": order}
        if limit is not None:
            params["limit"] = limit

        try:
            async with self._client_factory(api_key) as client:
                page = await client.beta.threads.messages.list(thread_id, **params)
        except openai.NotFoundError as exc:
            logger.warning(f"Upstream thread not found: {thread_id}")
            raise ThreadNotFound() from exc
        except openai.AuthenticationError as exc:
            logger.warning(f"Upstream rejected credential for thread {thread_id}")
            raise InvalidCredential() from exc
        except openai.APIError as exc:
            logger.error(f"Upstream error listing messages for {thread_id}: {exc}")
            raise UpstreamUnavailable(getattr(exc, "message", None) or str(exc)) from exc

        drafts = [normalize_message(raw) for raw in page.data]
        if order == "desc":
            drafts.reverse()

        logger.debug(f"Fetched {len(drafts)} message(s) for thread {thread_id}")
        return drafts
