"""Route permission binding model."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, func
from permgate.db.base import Base


class RoutePermission(Base):
    """Declares that route + method requires a permission. Method "*" matches any verb."""
    __tablename__ = "router_permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route = Column(String(255), nullable=False, index=True)
    method = Column(String(10), nullable=False, default="*")
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
