# models/batch_job.py
"""
Checkpoints of committing batch jobs (backfill, recalculation).
"""
from sqlalchemy import Column, Integer, String, DateTime, DECIMAL, JSON

from models.base import Base, _get_current_time


class BatchJob(Base):
    """Resumable batch job state."""
    __tablename__ = 'batch_jobs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    jobType = Column(String(30), nullable=False, index=True)  # backfill, recalculation
    scope = Column(JSON, nullable=True)  # {"beneficiaryId": 12} or {"all": true}
    status = Column(String(20), default='running', index=True)  # running, completed, failed
    createdAt = Column(DateTime, default=_get_current_time, index=True)
    startedBy = Column(Integer, nullable=True)
    completedAt = Column(DateTime, nullable=True)

    # Checkpoint: everything up to lastPaymentID is committed
    lastPaymentID = Column(Integer, default=0)
    processed = Column(Integer, default=0)
    created = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    retired = Column(Integer, default=0)
    totalAmount = Column(DECIMAL(18, 2), default=0)

    attempts = Column(Integer, default=0)
    lastError = Column(String, nullable=True)

    def __repr__(self):
        return f"<BatchJob({self.jobType}, status={self.status}, last={self.lastPaymentID})>"
