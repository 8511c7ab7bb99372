from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    # naive UTC so values compare the same way on Postgres and SQLite
    return datetime.now(timezone.utc).replace(tzinfo=None)
