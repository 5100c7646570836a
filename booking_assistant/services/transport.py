"""Outbound channel back to the conversational agent.

Tool results travel as ``conversation.respond`` app messages whose text is a
JSON document ``{"tool_call_id", "result"}``; free-text echoes travel as
``conversation.echo``. How the messages reach the agent depends on the
transport in use.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from booking_assistant.config.settings import HTTP_TIMEOUT_SECONDS
from booking_assistant.models.booking import ToolResult


logger = logging.getLogger("booking.transport")


def build_tool_result_message(conversation_id: Optional[str], result: ToolResult) -> Dict[str, Any]:
    text = json.dumps({"tool_call_id": result.tool_call_id, "result": result.to_payload()})
    return {
        "message_type": "conversation",
        "event_type": "conversation.respond",
        "conversation_id": conversation_id,
        "properties": {"text": text},
    }


def build_echo_message(conversation_id: Optional[str], text: str, modality: str = "text") -> Dict[str, Any]:
    return {
        "message_type": "conversation",
        "event_type": "conversation.echo",
        "conversation_id": conversation_id,
        "properties": {"modality": modality, "text": text},
    }


class ConversationTransport(ABC):
    """Sends app messages to the agent. Implementations never raise on delivery failure."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> bool:
        ...

    async def send_tool_result(self, conversation_id: Optional[str], result: ToolResult) -> bool:
        return await self.send(build_tool_result_message(conversation_id, result))

    async def send_echo(self, conversation_id: Optional[str], text: str, modality: str = "text") -> bool:
        return await self.send(build_echo_message(conversation_id, text, modality))


class LoggingTransport(ConversationTransport):
    """Logs outbound messages and keeps them in ``sent``; used when no callback is configured."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(self, message: Dict[str, Any]) -> bool:
        self.sent.append(message)
        logger.info(
            "App message %s for %s: %s",
            message.get("event_type"),
            message.get("conversation_id"),
            message.get("properties", {}).get("text", "")[:500],
        )
        return True


class WebhookTransport(ConversationTransport):
    """POSTs app messages to a callback URL that relays them into the conversation."""

    def __init__(self, callback_url: str, headers: Optional[Dict[str, str]] = None) -> None:
        self.callback_url = callback_url
        self.headers = headers or {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    async def send(self, message: Dict[str, Any]) -> bool:
        try:
            async with self._client() as client:
                resp = await client.post(self.callback_url, json=message, headers=self.headers)
        except httpx.RequestError as exc:
            logger.warning("Delivering %s to %s failed: %r", message.get("event_type"), self.callback_url, exc)
            return False

        if not resp.is_success:
            logger.warning(
                "Callback %s returned %s: %s",
                self.callback_url,
                resp.status_code,
                (resp.text or "")[:500],
            )
            return False
        return True
