"""
convstream - Conversation History Resource

REST access to what the event stream does not keep: historical exchanges and
messages, exchange feedback, and content stored outside the stream.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional, Union

import httpx
import structlog

from convstream.config import Endpoints, Limits
from convstream.exceptions import ConvStreamError
from convstream.models import FeedbackRating, FeedbackResponse, HistoricalExchange, HistoricalMessage
from convstream.resources.base import BaseResource, PaginatedResponse

logger = structlog.get_logger(__name__)


class ConversationHistory(BaseResource):
    """
    Resource for conversation history.

    Example:
        >>> history = ConversationHistory(token_provider, config)
        >>> async for exchange in history.iter_exchanges("conv-1"):
        ...     session.replay([exchange])
        >>> await history.create_feedback("conv-1", "ex-1", FeedbackRating.POSITIVE)
    """

    async def list_exchanges(
        self,
        conversation_id: str,
        page_size: int = Limits.DEFAULT_PAGE_SIZE,
        cursor: Optional[str] = None,
        message_sort: Optional[str] = None,
    ) -> PaginatedResponse[HistoricalExchange]:
        """
        List one page of exchanges in a conversation.

        Args:
            conversation_id: The conversation's identifier
            page_size: Number of exchanges per page
            cursor: Cursor returned by the previous page
            message_sort: Message order inside each exchange (ascending, descending)

        Returns:
            PaginatedResponse containing HistoricalExchange objects
        """
        params = self._build_pagination_params(
            page_size=page_size,
            cursor=cursor,
            messageSort=message_sort,
        )
        response = await self._get(
            Endpoints.EXCHANGES.format(conversation_id=conversation_id),
            params=params,
        )
        return PaginatedResponse(
            items=[HistoricalExchange.model_validate(item) for item in response.get("items", [])],
            next_cursor=response.get("nextCursor"),
        )

    async def iter_exchanges(
        self,
        conversation_id: str,
        page_size: int = Limits.DEFAULT_PAGE_SIZE,
    ) -> AsyncIterator[HistoricalExchange]:
        """Iterate over every exchange, following cursors."""
        cursor = None
        while True:
            page = await self.list_exchanges(conversation_id, page_size=page_size, cursor=cursor)
            for exchange in page:
                yield exchange
            if not page.has_more:
                break
            cursor = page.next_cursor

    async def get_exchange(
        self,
        conversation_id: str,
        exchange_id: str,
        message_sort: Optional[str] = None,
    ) -> HistoricalExchange:
        params = {"messageSort": message_sort} if message_sort else None
        response = await self._get(
            Endpoints.EXCHANGE.format(conversation_id=conversation_id, exchange_id=exchange_id),
            params=params,
        )
        return HistoricalExchange.model_validate(response)

    async def get_message(
        self,
        conversation_id: str,
        exchange_id: str,
        message_id: str,
    ) -> HistoricalMessage:
        response = await self._get(
            Endpoints.MESSAGE.format(
                conversation_id=conversation_id,
                exchange_id=exchange_id,
                message_id=message_id,
            )
        )
        return HistoricalMessage.model_validate(response)

    async def create_feedback(
        self,
        conversation_id: str,
        exchange_id: str,
        rating: Union[FeedbackRating, str],
        comment: Optional[str] = None,
    ) -> FeedbackResponse:
        """
        Submit feedback for an exchange.

        Args:
            conversation_id: The conversation's identifier
            exchange_id: The exchange being rated
            rating: positive or negative
            comment: Optional free-text comment

        Returns:
            The stored feedback
        """
        body: dict = {"rating": FeedbackRating(rating).value}
        if comment:
            body["comment"] = comment

        response = await self._post(
            Endpoints.EXCHANGE_FEEDBACK.format(conversation_id=conversation_id, exchange_id=exchange_id),
            json=body,
        )
        return FeedbackResponse.model_validate(response or {})

    async def fetch_external_data(self, uri: str) -> Any:
        """
        Download a content part payload stored outside the stream.

        External URIs are pre-authorised, so no bearer token is attached.
        """
        client = self._get_client()
        logger.debug("fetch_external_data", uri=uri)
        try:
            response = await client.get(uri)
        except httpx.RequestError as e:
            raise ConvStreamError(f"Request failed: {e}")
        return self._handle_response(response)
