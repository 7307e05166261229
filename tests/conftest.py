import pytest

from attendance_sync.core.database import create_engine_for, create_session_factory, init_db
from attendance_sync.models import AttendanceSyncJob, JobStatus, JobType, Staff
from attendance_sync.repositories import AttendanceRepository, JobRepository, StaffDirectory
from attendance_sync.services.employee_identity import EmployeeIdentityResolver, EmployeeValidationConfig


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def staff_members(session_factory):
    staff = [
        Staff(id="staff-aisha", employee_id="EMP001", name="Aisha Rasheed", email="aisha@company.com"),
        Staff(id="staff-ibrahim", employee_id="EMP002", name="Ibrahim Naseem", email="ibrahim@company.com"),
        Staff(id="staff-mariyam", employee_id="EMP003", name="Mariyam Shifa", email="mariyam@company.com"),
        Staff(id="staff-former", employee_id="EMP004", name="Former Employee", email="former@company.com",
              is_active=False),
    ]
    async with session_factory() as session:
        session.add_all(staff)
        await session.commit()
    return staff


@pytest.fixture
def attendance_repository(session_factory):
    return AttendanceRepository(session_factory)


@pytest.fixture
def job_repository(session_factory):
    return JobRepository(session_factory)


@pytest.fixture
def identity_resolver(session_factory):
    return EmployeeIdentityResolver(
        StaffDirectory(session_factory),
        EmployeeValidationConfig(mapping_strategy="email_prefix", email_domain="@company.com")
    )


@pytest.fixture
async def seed_job(job_repository):
    """A finished sync job that seeded AUTO_SYNC records can point at."""
    return await job_repository.create(AttendanceSyncJob(
        id="job_seed",
        type=JobType.MANUAL_TRIGGER,
        status=JobStatus.COMPLETED,
        config={},
    ))
