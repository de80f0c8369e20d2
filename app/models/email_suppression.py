from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.schema import Index

from app.core.clock import utcnow
from app.database import Base

GLOBAL_SCOPE = "global"


class EmailSuppression(Base):
    __tablename__ = "email_suppressions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String(320), nullable=False)
    scope = Column(String(32), nullable=False, default=GLOBAL_SCOPE)
    reason = Column(String(64), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_email_suppressions_email_scope", "email", "scope"),
    )
