from __future__ import annotations
from contextlib import contextmanager, nullcontext
from typing import (
    TYPE_CHECKING,
    Any,
    Generic,
    Iterator,
    Sequence,
    Type,
    TypeVar,
)
from sqlalchemy import (
    NullPool,
    Table,
    asc,
    create_engine,
    delete,
    desc,
    func,
    inspect,
    or_,
    select,
    text,
)
from sqlalchemy.orm import Session, sessionmaker

from coach_chatbot.models.base import Base

if TYPE_CHECKING:
    from sqlalchemy import ColumnExpressionArgument

V = TypeVar("V", bound=Type)


class Database:
    """
    Engine plus session factory for one database URL.

    Built once per process (application lifespan or worker) and handed to the
    stores explicitly; nothing in the request path reaches for a global handle.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, poolclass=NullPool, connect_args=connect_args)
        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self, tables: list[Table] | None = None) -> None:
        if self.engine.dialect.name == "postgresql":
            with self.engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        Base.metadata.create_all(self.engine, tables=tables)

    def dispose(self) -> None:
        self.engine.dispose()


class CRUDCapability(Generic[V]):
    resource_db: Type[V]

    def __init__(self, resource_db: Type[V], database: Database) -> None:
        self.resource_db = resource_db
        self.database = database

    def db_row_to_model(self, row: V) -> dict[str, Any]:
        return {attr.key: getattr(row, attr.key) for attr in inspect(type(row)).column_attrs}

    def db_rows_to_model_list(self, rows: Sequence[V]) -> list[dict]:
        return [self.db_row_to_model(r) for r in rows]

    def _session(self, session: Session | None):
        # join the caller's transaction when one is passed in
        if session is not None:
            return nullcontext(session)
        return self.database.session()

    def list_resource(
        self,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        like_query: dict[str, str] | None = None,
        order_by: list[str] | None = None,
        session: Session | None = None,
    ) -> list[dict[str, Any]]:
        stmt = select(self.resource_db)
        if where is not None:
            stmt = stmt.where(*where)
        if like_query is not None:
            or_conditions = []
            for column_name, search_value in like_query.items():
                column = getattr(self.resource_db, column_name)
                or_conditions.append(
                    func.lower(column).like(f"%{search_value.lower()}%")
                )
            stmt = stmt.where(or_(*or_conditions))
        if order_by is not None:
            order_by_clauses = []
            for item in order_by:
                if item.startswith("-"):
                    column = getattr(self.resource_db, item[1:])
                    order_by_clauses.append(desc(column))
                else:
                    column = getattr(self.resource_db, item)
                    order_by_clauses.append(asc(column))
            stmt = stmt.order_by(*order_by_clauses)
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset is not None:
            stmt = stmt.offset(offset)

        with self._session(session) as s:
            resources = s.scalars(stmt).all()
            return self.db_rows_to_model_list(resources)

    def get_resource(
        self,
        resource_id: str | int | None,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> dict[str, Any] | None:
        stmt = select(self.resource_db)
        if resource_id is not None:
            stmt = stmt.where(self.resource_db.id == resource_id)  # type: ignore
        if where is not None:
            stmt = stmt.where(*where)
        with self._session(session) as s:
            resource = s.scalars(stmt).first()
            if resource is None:
                return None
            return self.db_row_to_model(resource)

    def count_resource(
        self,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(self.resource_db)
        if where is not None:
            stmt = stmt.where(*where)
        with self._session(session) as s:
            return s.execute(stmt).scalar_one()

    def max_value(
        self,
        column_name: str,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> Any:
        stmt = select(func.max(getattr(self.resource_db, column_name)))
        if where is not None:
            stmt = stmt.where(*where)
        with self._session(session) as s:
            return s.execute(stmt).scalar()

    def create_resource(
        self,
        data: dict[str, Any],
        session: Session | None = None,
    ) -> dict[str, Any]:
        resource = self.resource_db(**data)  # type: ignore
        with self._session(session) as s:
            s.add(resource)
            s.flush()
            s.refresh(resource)
            return self.db_row_to_model(resource)

    def update_resource(
        self,
        data: dict[str, Any] | None,
        resource_id: str | int | None = None,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> dict[str, Any] | None:
        stmt = select(self.resource_db)
        if resource_id is not None:
            stmt = stmt.where(self.resource_db.id == resource_id)  # type: ignore
        if where is not None:
            stmt = stmt.where(*where)
        with self._session(session) as s:
            resource = s.scalars(stmt).first()
            if resource is None:
                return None
            if data is not None:
                for k in data:
                    setattr(resource, k, data[k])
            s.add(resource)
            s.flush()
            s.refresh(resource)
            return self.db_row_to_model(resource)

    def delete_resource(
        self,
        resource_id: str | int | None = None,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> int:
        stmt = delete(self.resource_db)
        if resource_id is not None:
            stmt = stmt.where(self.resource_db.id == resource_id)  # type: ignore
        if where is not None:
            stmt = stmt.where(*where)
        with self._session(session) as s:
            return s.execute(stmt).rowcount
