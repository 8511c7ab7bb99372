"""Durable, tenant-scoped storage of conversations and their messages.

All SQLAlchemy work is synchronous and runs in the threadpool; the public
methods are coroutines so the streaming path can await them.
"""

import copy
import logging
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func
from sqlalchemy.orm import Session

from coach_chatbot.db.crud_helper import CRUDRegistry
from coach_chatbot.exceptions import AccessError, NotFoundError
from coach_chatbot.models.base import utcnow
from coach_chatbot.models.chat import Conversation, Message
from coach_chatbot.streaming.events import Usage

logger = logging.getLogger(__name__)

TITLE_LENGTH = 100
DEFAULT_TITLE = "New Chat"


def fallback_title(text: Optional[str]) -> str:
    text = (text or "").strip()
    return text[:TITLE_LENGTH] if text else DEFAULT_TITLE


class MessageTree:
    """
    Arena view of one conversation's messages.

    Rows are held in a dict by id with a parent -> children index next to it;
    branches are followed by id lookups, never by object references.
    """

    def __init__(self, messages: list[dict[str, Any]]) -> None:
        self.by_id: dict[str, dict[str, Any]] = {}
        self.children: dict[Optional[str], list[str]] = defaultdict(list)
        for message in sorted(messages, key=lambda m: m["sequence_order"]):
            self.by_id[message["id"]] = message
        for message_id, message in self.by_id.items():
            parent = message.get("parent_message_id")
            self.children[parent if parent in self.by_id else None].append(message_id)

    def __len__(self) -> int:
        return len(self.by_id)

    def latest(self) -> Optional[str]:
        if not self.by_id:
            return None
        return max(self.by_id.values(), key=lambda m: m["sequence_order"])["id"]

    def path_to(self, leaf_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Messages from the root down to ``leaf_id`` (default: newest message)."""
        current = leaf_id or self.latest()
        path = []
        seen = set()
        while current is not None and current in self.by_id and current not in seen:
            seen.add(current)
            message = self.by_id[current]
            path.append(message)
            current = message.get("parent_message_id")
        path.reverse()
        return path

    def siblings(self, message_id: str) -> list[str]:
        message = self.by_id[message_id]
        parent = message.get("parent_message_id")
        return list(self.children[parent if parent in self.by_id else None])


class TurnPersistenceStore:
    def __init__(self, crud: CRUDRegistry) -> None:
        self.crud = crud
        self.database = crud.database

    # conversations

    def _ensure_conversation(self, conversation_id, tenant_id, user_id, model, agent_id, first_user_text):
        with self.database.session() as session:
            if conversation_id is not None:
                existing = self.crud.conversations.get_resource(conversation_id, session=session)
                if existing is not None:
                    if existing["tenant_id"] != tenant_id or existing["user_id"] != user_id:
                        raise AccessError("Conversation not found", status_code=404)
                    return conversation_id, False
            conversation = self.crud.conversations.create_resource(
                {
                    "id": conversation_id or str(uuid.uuid4()),
                    "tenant_id": tenant_id,
                    "user_id": user_id,
                    "title": fallback_title(first_user_text),
                    "agent_id": agent_id,
                    "model": model,
                    "conversation_metadata": {},
                },
                session=session,
            )
            return conversation["id"], True

    async def ensure_conversation(
        self,
        conversation_id: Optional[str],
        tenant_id: str,
        user_id: str,
        model: str,
        agent_id: Optional[str],
        first_user_text: Optional[str],
    ) -> tuple[str, bool]:
        """
        Resolve the conversation for a turn, creating it when needed.

        An id owned by another user or tenant raises ``AccessError`` (404). An id
        that does not exist yet is created as supplied.
        """
        conversation_id, created = await run_in_threadpool(
            self._ensure_conversation,
            conversation_id,
            tenant_id,
            user_id,
            model,
            agent_id,
            first_user_text,
        )
        if created:
            logger.info(f"Created conversation {conversation_id} for user {user_id}")
        return conversation_id, created

    async def get_conversation(
        self, conversation_id: str, tenant_id: str, user_id: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        where = [Conversation.tenant_id == tenant_id]
        if user_id is not None:
            where.append(Conversation.user_id == user_id)
        return await run_in_threadpool(
            self.crud.conversations.get_resource, conversation_id, where=where
        )

    async def list_conversations(
        self,
        user_id: str,
        tenant_id: str,
        limit: int = 20,
        offset: int = 0,
        archived: bool = False,
    ) -> list[dict[str, Any]]:
        archived_flag = func.coalesce(
            Conversation.conversation_metadata["archived"].as_boolean(), False
        )
        return await run_in_threadpool(
            self.crud.conversations.list_resource,
            where=[
                Conversation.user_id == user_id,
                Conversation.tenant_id == tenant_id,
                archived_flag == archived,
            ],
            limit=limit,
            offset=offset,
            order_by=["-updated_at", "id"],
        )

    def _archive(self, conversation_id, tenant_id, user_id):
        where = [Conversation.tenant_id == tenant_id, Conversation.user_id == user_id]
        with self.database.session() as session:
            existing = self.crud.conversations.get_resource(conversation_id, where=where, session=session)
            if existing is None:
                raise NotFoundError("Conversation not found")
            metadata = {**(existing["conversation_metadata"] or {}), "archived": True}
            return self.crud.conversations.update_resource(
                {"conversation_metadata": metadata}, conversation_id, session=session
            )

    async def archive_conversation(
        self, conversation_id: str, tenant_id: str, user_id: str
    ) -> dict[str, Any]:
        return await run_in_threadpool(self._archive, conversation_id, tenant_id, user_id)

    async def update_title(self, conversation_id: str, tenant_id: str, title: str) -> None:
        await run_in_threadpool(
            self.crud.conversations.update_resource,
            {"title": title[:TITLE_LENGTH]},
            conversation_id,
            where=[Conversation.tenant_id == tenant_id],
        )

    def _touch(self, conversation_id: str, tenant_id: str, session: Session) -> None:
        where = [Conversation.tenant_id == tenant_id]
        conversation = self.crud.conversations.get_resource(conversation_id, where=where, session=session)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        now = utcnow()
        previous = conversation["updated_at"]
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        self.crud.conversations.update_resource(
            {"updated_at": now}, conversation_id, where=where, session=session
        )

    async def touch_conversation(self, conversation_id: str, tenant_id: str) -> None:
        def touch():
            with self.database.session() as session:
                self._touch(conversation_id, tenant_id, session)

        await run_in_threadpool(touch)

    # messages

    def _next_sequence_order(self, conversation_id: str, session: Session) -> int:
        current = self.crud.messages.max_value(
            "sequence_order", where=[Message.conversation_id == conversation_id], session=session
        )
        return (current or 0) + 1

    def _latest_message_id(self, conversation_id: str, tenant_id: str, session: Session) -> Optional[str]:
        latest = self.crud.messages.list_resource(
            where=[Message.conversation_id == conversation_id, Message.tenant_id == tenant_id],
            order_by=["-sequence_order"],
            limit=1,
            session=session,
        )
        return latest[0]["id"] if latest else None

    def _require_message(self, conversation_id, tenant_id, message_id, session=None) -> dict[str, Any]:
        message = self.crud.messages.get_resource(
            message_id,
            where=[Message.conversation_id == conversation_id, Message.tenant_id == tenant_id],
            session=session,
        )
        if message is None:
            raise AccessError("Message not found", status_code=404)
        return message

    async def require_message(
        self, conversation_id: Optional[str], tenant_id: str, message_id: str
    ) -> dict[str, Any]:
        """The message, if it belongs to this conversation and tenant; otherwise ``AccessError`` (404)."""
        return await run_in_threadpool(self._require_message, conversation_id, tenant_id, message_id)

    def _record_user_message(self, conversation_id, tenant_id, text, parent_message_id):
        with self.database.session() as session:
            if parent_message_id is None:
                parent_message_id = self._latest_message_id(conversation_id, tenant_id, session)
            else:
                self._require_message(conversation_id, tenant_id, parent_message_id, session)
            return self.crud.messages.create_resource(
                {
                    "id": str(uuid.uuid4()),
                    "conversation_id": conversation_id,
                    "tenant_id": tenant_id,
                    "role": "user",
                    "content": text,
                    "parent_message_id": parent_message_id,
                    "sequence_order": self._next_sequence_order(conversation_id, session),
                },
                session=session,
            )

    async def record_user_message(
        self,
        conversation_id: str,
        tenant_id: str,
        text: Optional[str],
        parent_message_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """Insert the user's message; returns None when there is no text to store."""
        if not text or not text.strip():
            return None
        return await run_in_threadpool(
            self._record_user_message, conversation_id, tenant_id, text, parent_message_id
        )

    def _record_assistant_message(self, data: dict[str, Any]):
        with self.database.session() as session:
            data["sequence_order"] = self._next_sequence_order(data["conversation_id"], session)
            message = self.crud.messages.create_resource(data, session=session)
            self._touch(data["conversation_id"], data["tenant_id"], session)
            return message

    async def record_assistant_message(
        self,
        conversation_id: str,
        tenant_id: str,
        message_id: str,
        text: str,
        tool_calls: Optional[list[dict[str, Any]]] = None,
        tool_results: Optional[list[dict[str, Any]]] = None,
        usage: Optional[Usage] = None,
        parent_message_id: Optional[str] = None,
        model: Optional[str] = None,
        finish_reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """Insert the completed assistant message and touch the conversation in one transaction."""
        usage = usage or Usage()
        data = {
            "id": message_id,
            "conversation_id": conversation_id,
            "tenant_id": tenant_id,
            "role": "assistant",
            "content": text,
            "tool_calls": tool_calls or None,
            "tool_results": tool_results or None,
            "parent_message_id": parent_message_id,
            "model": model,
            "finish_reason": finish_reason,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
        }
        message = await run_in_threadpool(self._record_assistant_message, data)
        logger.info(f"Saved assistant message {message_id} to conversation {conversation_id}")
        return message

    async def list_messages(self, conversation_id: str, tenant_id: str) -> list[dict[str, Any]]:
        return await run_in_threadpool(
            self.crud.messages.list_resource,
            where=[Message.conversation_id == conversation_id, Message.tenant_id == tenant_id],
            order_by=["sequence_order"],
        )

    async def count_messages(self, conversation_id: str, tenant_id: str) -> int:
        return await run_in_threadpool(
            self.crud.messages.count_resource,
            where=[Message.conversation_id == conversation_id, Message.tenant_id == tenant_id],
        )

    async def recent_messages(
        self, conversation_id: str, tenant_id: str, limit: int
    ) -> list[dict[str, Any]]:
        """The last ``limit`` messages, oldest first."""
        newest_first = await run_in_threadpool(
            self.crud.messages.list_resource,
            where=[Message.conversation_id == conversation_id, Message.tenant_id == tenant_id],
            order_by=["-sequence_order"],
            limit=limit,
        )
        return list(reversed(newest_first))

    async def history_path(
        self,
        conversation_id: str,
        tenant_id: str,
        leaf_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Root-to-leaf branch ending at ``leaf_id`` (default: newest message)."""
        tree = MessageTree(await self.list_messages(conversation_id, tenant_id))
        path = tree.path_to(leaf_id)
        if limit is not None:
            path = path[-limit:]
        return path

    def _update_artifact_content(self, conversation_id, tenant_id, message_id, tool_call_id, new_content):
        where = [Message.conversation_id == conversation_id, Message.tenant_id == tenant_id]
        with self.database.session() as session:
            message = self.crud.messages.get_resource(message_id, where=where, session=session)
            if message is None:
                raise NotFoundError("Message not found")

            tool_results = copy.deepcopy(message["tool_results"] or [])
            for entry in tool_results:
                if entry.get("toolCallId") == tool_call_id and isinstance(entry.get("result"), dict):
                    entry["result"]["content"] = new_content
                    break
            else:
                raise NotFoundError("Artifact not found")

            return self.crud.messages.update_resource(
                {"tool_results": tool_results}, message_id, where=where, session=session
            )

    async def update_artifact_content(
        self,
        conversation_id: str,
        tenant_id: str,
        message_id: str,
        tool_call_id: str,
        new_content: str,
    ) -> dict[str, Any]:
        """Replace ``result.content`` of one tool result; nothing else on the message changes."""
        message = await run_in_threadpool(
            self._update_artifact_content,
            conversation_id,
            tenant_id,
            message_id,
            tool_call_id,
            new_content,
        )
        logger.info(f"Updated artifact {tool_call_id} on message {message_id}")
        return message
