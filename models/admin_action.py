# models/admin_action.py
"""
AdminAction model - log of administrative operations.
"""
from sqlalchemy import Column, Integer, String, Boolean, JSON

from models.base import Base, AuditMixin


class AdminAction(Base, AuditMixin):
    __tablename__ = 'admin_actions'

    actionID = Column(Integer, primary_key=True, autoincrement=True)
    adminID = Column(Integer, nullable=True, index=True)  # None for scheduler/system

    action = Column(String, nullable=False, index=True)  # audit_unlock, fix_marketing, backfill, ...
    params = Column(JSON, nullable=True)
    dryRun = Column(Boolean, default=False)
    result = Column(JSON, nullable=True)
    status = Column(String, default="ok")  # ok, rejected, error

    def __repr__(self):
        return f"<AdminAction({self.action}, admin={self.adminID}, dryRun={self.dryRun})>"
