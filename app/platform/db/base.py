import sqlalchemy
from sqlalchemy import Column, String
from sqlalchemy.orm import declarative_base
from uuid_extension import uuid7

from app.platform.utils.clock import utc_now

Base = declarative_base()


class BaseModel(Base):
    __abstract__ = True
    # uuid7 ids sort by creation time, list pagination relies on it as a tie-breaker
    id = Column(String, primary_key=True, default=lambda: str(uuid7()), index=True)
    created_at = Column(sqlalchemy.DateTime, default=utc_now, nullable=False, index=True)
    updated_at = Column(
        sqlalchemy.DateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

# Note: Models import this Base. Do not import models here to avoid circular imports.
