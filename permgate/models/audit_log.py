"""Audit log model — append-only."""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, func
from permgate.db.base import Base


class AuditLog(Base):
    """Immutable trail of permission checks and grant changes.

    This table is APPEND-ONLY: no UPDATE or DELETE operations should ever
    be performed on it (enforced at application level).
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False, index=True)
    action = Column(String(20), nullable=False, index=True)  # check, grant, revoke, modify
    target = Column(String(255), nullable=False, index=True)  # route or permission name
    result = Column(Boolean, nullable=False)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)
