"""
Attendance records as stored after a sync, plus the device punches folded
into each record.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Text, Float,
    ForeignKey, Index, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum
from datetime import datetime
from typing import Optional

from attendance_sync.core.database import Base


class RecordSource(str, enum.Enum):
    """Origin of an attendance record."""
    MANUAL = "MANUAL"
    AUTO_SYNC = "AUTO_SYNC"


class AttendanceRecord(Base):
    """One staff member's attendance for one calendar day."""

    __tablename__ = "attendance_records"

    id = Column(Integer, primary_key=True, index=True)
    staff_id = Column(String(50), ForeignKey("staff.id"), nullable=False)
    employee_id = Column(String(50), nullable=False)
    date = Column(Date, nullable=False)

    clock_in_time = Column(DateTime, nullable=True)
    clock_out_time = Column(DateTime, nullable=True)
    total_hours = Column(Float, nullable=True)

    # Device transaction id of the punch that created the record
    zk_transaction_id = Column(String(50), nullable=True)

    # Origin; the sync job link is cleared when old jobs are pruned
    source = Column(SQLEnum(RecordSource), nullable=False, default=RecordSource.MANUAL)
    sync_job_id = Column(String(50), ForeignKey("attendance_sync_jobs.id", ondelete="SET NULL"), nullable=True)
    machine_id = Column(String(50), nullable=True)
    fetched_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String(20), nullable=True)

    # Conflict bookkeeping
    conflict_resolved = Column(Boolean, default=False, nullable=False)
    conflict_resolved_by = Column(String(100), nullable=True)
    conflict_notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    staff = relationship("Staff", back_populates="attendance_records")
    punches = relationship(
        "AttendancePunch",
        back_populates="record",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint("staff_id", "date", "zk_transaction_id", name="uq_attendance_staff_date_transaction"),
        Index("ix_attendance_records_staff_date", "staff_id", "date"),
        Index("ix_attendance_records_sync_job", "sync_job_id"),
    )

    @property
    def is_manual(self) -> bool:
        return self.source == RecordSource.MANUAL

    def apply_punch(self, timestamp: datetime, state: int) -> None:
        """Widen the clock-in/clock-out window with another punch of the same day."""
        if state == 0:
            if self.clock_in_time is None or timestamp < self.clock_in_time:
                self.clock_in_time = timestamp
        elif state == 1:
            if self.clock_out_time is None or timestamp > self.clock_out_time:
                self.clock_out_time = timestamp
        self.total_hours = self.calculate_total_hours()

    def calculate_total_hours(self) -> Optional[float]:
        if not self.clock_in_time or not self.clock_out_time:
            return None
        if self.clock_out_time <= self.clock_in_time:
            return None
        return round((self.clock_out_time - self.clock_in_time).total_seconds() / 3600, 2)


class AttendancePunch(Base):
    """A single device event folded into an attendance record."""

    __tablename__ = "attendance_punches"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(Integer, ForeignKey("attendance_records.id", ondelete="CASCADE"), nullable=False)
    zk_transaction_id = Column(String(50), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    state = Column(Integer, nullable=False)
    machine_id = Column(String(50), nullable=True)

    record = relationship("AttendanceRecord", back_populates="punches")

    __table_args__ = (
        UniqueConstraint("record_id", "zk_transaction_id", name="uq_attendance_punch_record_transaction"),
        Index("ix_attendance_punches_transaction", "zk_transaction_id"),
    )
