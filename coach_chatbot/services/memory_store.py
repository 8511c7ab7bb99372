import logging
import uuid
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool

from coach_chatbot.db.crud_helper import CRUDRegistry
from coach_chatbot.exceptions import ConflictError, NotFoundError
from coach_chatbot.models.memory import Memory, MemoryCategory, MemorySource

logger = logging.getLogger(__name__)

UNCHANGED = "unchanged"
UPDATED = "updated"
CREATED = "created"


class MemoryStore:
    """Tenant-scoped access to a user's remembered facts."""

    def __init__(self, crud: CRUDRegistry) -> None:
        self.crud = crud
        self.database = crud.database

    @staticmethod
    def _owner(user_id: str, tenant_id: str) -> list:
        return [Memory.user_id == user_id, Memory.tenant_id == tenant_id]

    async def list_memories(
        self, user_id: str, tenant_id: str, category: Optional[MemoryCategory] = None
    ) -> list[dict[str, Any]]:
        where = self._owner(user_id, tenant_id)
        if category is not None:
            where.append(Memory.category == MemoryCategory(category).value)
        return await run_in_threadpool(
            self.crud.memories.list_resource,
            where=where,
            order_by=["category", "-created_at"],
        )

    async def query(self, user_id: str, tenant_id: str, query: str) -> list[dict[str, Any]]:
        """Case-insensitive substring match on key or value."""
        return await run_in_threadpool(
            self.crud.memories.list_resource,
            where=self._owner(user_id, tenant_id),
            like_query={"key": query, "value": query},
            order_by=["category", "-created_at"],
        )

    def _upsert(self, user_id, tenant_id, category, key, value, source):
        where = self._owner(user_id, tenant_id) + [
            Memory.category == category,
            Memory.key == key,
        ]
        with self.database.session() as session:
            existing = self.crud.memories.get_resource(None, where=where, session=session)
            if existing is None:
                created = self.crud.memories.create_resource(
                    {
                        "id": str(uuid.uuid4()),
                        "user_id": user_id,
                        "tenant_id": tenant_id,
                        "category": category,
                        "key": key,
                        "value": value,
                        "source": source,
                    },
                    session=session,
                )
                return created, CREATED
            if existing["value"] == value:
                return existing, UNCHANGED
            updated = self.crud.memories.update_resource(
                {"value": value, "source": source}, existing["id"], session=session
            )
            return updated, UPDATED

    async def upsert_fact(
        self,
        user_id: str,
        tenant_id: str,
        category: MemoryCategory,
        key: str,
        value: str,
        source: MemorySource = MemorySource.AUTO,
    ) -> tuple[dict[str, Any], str]:
        """
        Insert or update the fact identified by (user, tenant, category, key).

        Returns the stored row and one of ``created``, ``updated`` or
        ``unchanged``; an identical value is left untouched.
        """
        return await run_in_threadpool(
            self._upsert,
            user_id,
            tenant_id,
            MemoryCategory(category).value,
            key.strip(),
            value.strip(),
            MemorySource(source).value,
        )

    def _update(self, memory_id, user_id, tenant_id, data):
        owner = self._owner(user_id, tenant_id)
        with self.database.session() as session:
            existing = self.crud.memories.get_resource(memory_id, where=owner, session=session)
            if existing is None:
                raise NotFoundError("Memory not found")
            category = data.get("category", existing["category"])
            key = data.get("key", existing["key"])
            if (category, key) != (existing["category"], existing["key"]):
                clash = self.crud.memories.get_resource(
                    None,
                    where=owner + [Memory.category == category, Memory.key == key],
                    session=session,
                )
                if clash is not None:
                    raise ConflictError(f"A memory for {category}/{key} already exists")
            return self.crud.memories.update_resource(data, memory_id, where=owner, session=session)

    async def update_memory(
        self,
        memory_id: str,
        user_id: str,
        tenant_id: str,
        data: dict[str, Any],
        source: MemorySource = MemorySource.MANUAL,
    ) -> dict[str, Any]:
        """
        Edit one fact; the edit marks it as ``source``.

        Moving a fact onto a (category, key) another fact already holds raises
        ``ConflictError``.
        """
        data = dict(data)
        if "category" in data:
            data["category"] = MemoryCategory(data["category"]).value
        if "key" in data:
            data["key"] = data["key"].strip()
        if "value" in data:
            data["value"] = data["value"].strip()
        data["source"] = MemorySource(source).value
        return await run_in_threadpool(self._update, memory_id, user_id, tenant_id, data)

    async def delete_memory(self, memory_id: str, user_id: str, tenant_id: str) -> None:
        deleted = await run_in_threadpool(
            self.crud.memories.delete_resource,
            memory_id,
            where=self._owner(user_id, tenant_id),
        )
        if not deleted:
            raise NotFoundError("Memory not found")
        logger.info(f"Deleted memory {memory_id} for user {user_id}")
