"""
Attendance record store.

Every call opens its own session so concurrent device tasks never share one.
The (staff_id, date, zk_transaction_id) unique constraint is the authority on
duplicates; ``create_many`` reports rows it rejects instead of raising.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.models.attendance import AttendanceRecord, AttendancePunch, RecordSource
from attendance_sync.utils.dates import utcnow


logger = logging.getLogger(__name__)

DateRange = Tuple[date, date]


@dataclass
class PunchCreate:
    zk_transaction_id: str
    timestamp: datetime
    state: int
    machine_id: Optional[str] = None


@dataclass
class AttendanceRecordCreate:
    """Values for a new attendance record and the punches it is built from."""
    staff_id: str
    employee_id: str
    date: date
    zk_transaction_id: Optional[str] = None
    clock_in_time: Optional[datetime] = None
    clock_out_time: Optional[datetime] = None
    source: RecordSource = RecordSource.AUTO_SYNC
    sync_job_id: Optional[str] = None
    machine_id: Optional[str] = None
    punches: List[PunchCreate] = field(default_factory=list)

    def to_model(self) -> AttendanceRecord:
        now = utcnow()
        is_synced = self.source == RecordSource.AUTO_SYNC
        record = AttendanceRecord(
            staff_id=self.staff_id,
            employee_id=self.employee_id,
            date=self.date,
            zk_transaction_id=self.zk_transaction_id,
            clock_in_time=self.clock_in_time,
            clock_out_time=self.clock_out_time,
            source=self.source,
            sync_job_id=self.sync_job_id,
            machine_id=self.machine_id,
            fetched_at=now if is_synced else None,
            synced_at=now if is_synced else None,
            last_sync_status="SUCCESS" if is_synced else None,
            conflict_resolved=False,
        )
        record.punches = []
        for punch in self.punches:
            record.punches.append(AttendancePunch(
                zk_transaction_id=punch.zk_transaction_id,
                timestamp=punch.timestamp,
                state=punch.state,
                machine_id=punch.machine_id,
            ))
            record.apply_punch(punch.timestamp, punch.state)
        if not self.punches:
            record.total_hours = record.calculate_total_hours()
        return record


@dataclass
class CreateError:
    record: AttendanceRecordCreate
    error: str


@dataclass
class CreateManyResult:
    created: List[AttendanceRecord] = field(default_factory=list)
    errors: List[CreateError] = field(default_factory=list)


class AttendanceRepository:
    """Query and persistence operations on attendance records."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def find_first(
        self,
        staff_id: str,
        date_range: DateRange,
        transaction_id: str
    ) -> Optional[AttendanceRecord]:
        """
        Find a record for the staff member within ``[start, end)`` that
        already holds the given device transaction.
        """
        start, end = date_range
        stmt = (
            select(AttendanceRecord)
            .where(
                AttendanceRecord.staff_id == staff_id,
                AttendanceRecord.date >= start,
                AttendanceRecord.date < end,
                or_(
                    AttendanceRecord.zk_transaction_id == transaction_id,
                    AttendanceRecord.punches.any(AttendancePunch.zk_transaction_id == transaction_id),
                ),
            )
            .order_by(AttendanceRecord.id)
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def find_many(
        self,
        staff_id: str,
        date_range: DateRange,
        origin: Optional[RecordSource] = None,
        conflict_resolved: Optional[bool] = None
    ) -> List[AttendanceRecord]:
        start, end = date_range
        stmt = select(AttendanceRecord).where(
            AttendanceRecord.staff_id == staff_id,
            AttendanceRecord.date >= start,
            AttendanceRecord.date < end,
        )
        if origin is not None:
            stmt = stmt.where(AttendanceRecord.source == origin)
        if conflict_resolved is not None:
            stmt = stmt.where(AttendanceRecord.conflict_resolved == conflict_resolved)

        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(AttendanceRecord.date, AttendanceRecord.id))
            return list(result.scalars().all())

    async def create_many(self, records: List[AttendanceRecordCreate]) -> CreateManyResult:
        """
        Insert records one transaction at a time.

        A row that violates a constraint is rolled back on its own and
        reported in ``errors``; the rest of the batch still lands.
        """
        result = CreateManyResult()
        for draft in records:
            async with self.session_factory() as session:
                record = draft.to_model()
                session.add(record)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    logger.warning(
                        f"Rejected attendance record for staff {draft.staff_id} on {draft.date}: {e.orig}"
                    )
                    result.errors.append(CreateError(record=draft, error=str(e.orig)))
                    continue
                result.created.append(record)

        logger.info(f"Created {len(result.created)} attendance records, {len(result.errors)} rejected")
        return result

    async def update_existing(
        self,
        record_id: int,
        punch: PunchCreate,
        sync_job_id: Optional[str] = None
    ) -> Optional[AttendanceRecord]:
        """Fold a re-fetched punch into an existing record."""
        async with self.session_factory() as session:
            record = await session.get(AttendanceRecord, record_id)
            if record is None:
                return None

            known = {p.zk_transaction_id for p in record.punches}
            if punch.zk_transaction_id not in known:
                record.punches.append(AttendancePunch(
                    zk_transaction_id=punch.zk_transaction_id,
                    timestamp=punch.timestamp,
                    state=punch.state,
                    machine_id=punch.machine_id,
                ))
            record.apply_punch(punch.timestamp, punch.state)
            record.synced_at = utcnow()
            record.last_sync_status = "UPDATED"
            if sync_job_id and not record.is_manual:
                record.sync_job_id = sync_job_id

            await session.commit()
            return record

    async def count(
        self,
        since: Optional[datetime] = None,
        conflict_resolved: Optional[bool] = None,
        origin: Optional[RecordSource] = None
    ) -> int:
        stmt = select(func.count(AttendanceRecord.id))
        if since is not None:
            stmt = stmt.where(AttendanceRecord.created_at >= since)
        if conflict_resolved is not None:
            stmt = stmt.where(AttendanceRecord.conflict_resolved == conflict_resolved)
        if origin is not None:
            stmt = stmt.where(AttendanceRecord.source == origin)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def mark_conflict_resolved(self, record_id: int, resolved_by: str, notes: Optional[str] = None) -> bool:
        async with self.session_factory() as session:
            record = await session.get(AttendanceRecord, record_id)
            if record is None:
                return False
            record.conflict_resolved = True
            record.conflict_resolved_by = resolved_by
            record.conflict_notes = notes
            await session.commit()
            logger.info(f"Attendance record {record_id} conflict resolved by {resolved_by}")
            return True
