"""
Employee identity resolution for device user ids.

Devices only know their own user ids. The resolver maps them onto active
staff records using a configurable strategy and caches every outcome,
positive or negative, for a configurable number of minutes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, Field, validator

from attendance_sync.core.config import Settings
from attendance_sync.repositories.staff_directory import StaffDirectory


logger = logging.getLogger(__name__)

BATCH_CHUNK_SIZE = 50


class MappingStrategy(str, Enum):
    EMAIL_PREFIX = "email_prefix"
    DIRECT_ID = "direct_id"
    CUSTOM_FIELD = "custom_field"


class EmployeeValidationConfig(BaseModel):
    """How device user ids are mapped onto staff records"""
    mapping_strategy: str = MappingStrategy.EMAIL_PREFIX.value
    email_domain: Optional[str] = "@company.com"
    cache_results: bool = True
    cache_ttl_minutes: float = Field(default=30, gt=0, le=1440)

    @validator("email_domain")
    def normalize_email_domain(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        return v if v.startswith("@") else f"@{v}"

    @classmethod
    def from_settings(cls, config: Settings) -> "EmployeeValidationConfig":
        return cls(
            mapping_strategy=config.EMPLOYEE_MAPPING_STRATEGY,
            email_domain=config.EMPLOYEE_EMAIL_DOMAIN,
            cache_results=config.EMPLOYEE_CACHE_RESULTS,
            cache_ttl_minutes=config.EMPLOYEE_CACHE_TTL_MINUTES,
        )


@dataclass(frozen=True)
class EmployeeValidationResult:
    is_valid: bool
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None
    staff_email: Optional[str] = None
    employee_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ValidEmployee:
    device_user_id: str
    staff_id: str
    name: str
    email: Optional[str]


@dataclass
class InvalidEmployee:
    device_user_id: str
    error_message: str


@dataclass
class BatchEmployeeValidationResult:
    total_processed: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    valid_entries: List[ValidEmployee] = field(default_factory=list)
    invalid_entries: List[InvalidEmployee] = field(default_factory=list)


@dataclass
class EmployeeMapping:
    device_user_id: str
    mapped: bool
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None
    employee_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CacheEntry:
    result: EmployeeValidationResult
    inserted_at: float  # time.monotonic()
    inserted_wall: datetime


class EmployeeIdentityResolver:
    """Resolve device user ids to active staff, with a per-instance TTL cache."""

    def __init__(self, staff_directory: StaffDirectory, config: Optional[EmployeeValidationConfig] = None):
        self.staff_directory = staff_directory
        self.config = config or EmployeeValidationConfig()
        self._cache: Dict[str, CacheEntry] = {}

    @property
    def _ttl_seconds(self) -> float:
        return self.config.cache_ttl_minutes * 60

    async def resolve(self, device_user_id: str) -> EmployeeValidationResult:
        """
        Resolve one device user id. Lookup failures are returned as invalid
        results, never raised.
        """
        if self.config.cache_results:
            cached = self._get_cached(device_user_id)
            if cached is not None:
                return cached

        result = await self._lookup(device_user_id)

        if self.config.cache_results:
            self._cache[device_user_id] = CacheEntry(
                result=result,
                inserted_at=time.monotonic(),
                inserted_wall=datetime.now()
            )
        return result

    async def resolve_batch(self, device_user_ids: List[str]) -> BatchEmployeeValidationResult:
        """Resolve many ids in chunks of ``BATCH_CHUNK_SIZE``, keeping input order."""
        batch = BatchEmployeeValidationResult(total_processed=len(device_user_ids))

        for start in range(0, len(device_user_ids), BATCH_CHUNK_SIZE):
            chunk = device_user_ids[start:start + BATCH_CHUNK_SIZE]
            results = await asyncio.gather(*(self.resolve(user_id) for user_id in chunk))

            for user_id, result in zip(chunk, results):
                if result.is_valid and result.staff_id:
                    batch.valid_entries.append(ValidEmployee(
                        device_user_id=user_id,
                        staff_id=result.staff_id,
                        name=result.staff_name,
                        email=result.staff_email
                    ))
                else:
                    batch.invalid_entries.append(InvalidEmployee(
                        device_user_id=user_id,
                        error_message=result.error_message or "Unknown validation error"
                    ))

        batch.valid_count = len(batch.valid_entries)
        batch.invalid_count = len(batch.invalid_entries)
        return batch

    async def map_device_user_to_staff(self, device_user_id: str) -> EmployeeMapping:
        result = await self.resolve(device_user_id)
        return EmployeeMapping(
            device_user_id=device_user_id,
            mapped=result.is_valid,
            staff_id=result.staff_id,
            staff_name=result.staff_name,
            employee_id=result.employee_id,
            error=result.error_message
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_cache_stats(self) -> Dict[str, object]:
        if not self._cache:
            return {"entry_count": 0, "oldest_entry": None}
        return {
            "entry_count": len(self._cache),
            "oldest_entry": min(entry.inserted_wall for entry in self._cache.values()),
        }

    def _get_cached(self, device_user_id: str) -> Optional[EmployeeValidationResult]:
        entry = self._cache.get(device_user_id)
        if entry is None:
            return None
        if time.monotonic() - entry.inserted_at > self._ttl_seconds:
            del self._cache[device_user_id]
            return None
        return entry.result

    async def _lookup(self, device_user_id: str) -> EmployeeValidationResult:
        strategy = self.config.mapping_strategy

        if strategy == MappingStrategy.EMAIL_PREFIX.value:
            return await self._resolve_by_email_prefix(device_user_id)
        if strategy == MappingStrategy.DIRECT_ID.value:
            return await self._resolve_by_direct_id(device_user_id)
        if strategy == MappingStrategy.CUSTOM_FIELD.value:
            return EmployeeValidationResult(
                is_valid=False,
                error_message="Custom field mapping not yet implemented"
            )
        return EmployeeValidationResult(is_valid=False, error_message="Invalid mapping strategy configured")

    async def _resolve_by_email_prefix(self, device_user_id: str) -> EmployeeValidationResult:
        if not self.config.email_domain:
            return EmployeeValidationResult(
                is_valid=False,
                error_message="Email domain not configured for email_prefix strategy"
            )

        email = f"{device_user_id}{self.config.email_domain}"
        try:
            validate_email(email, check_deliverability=False)
        except EmailNotValidError as e:
            return EmployeeValidationResult(
                is_valid=False,
                error_message=f"Invalid employee email address {email}: {e}"
            )

        try:
            staff = await self.staff_directory.find_active_by_email(email)
        except Exception as e:
            logger.error(f"Staff lookup by email {email} failed: {e}")
            return EmployeeValidationResult(is_valid=False, error_message=f"Database query failed: {e}")

        if staff is None:
            return EmployeeValidationResult(
                is_valid=False,
                error_message=f"No active employee found with email: {email}"
            )
        return self._valid_result(staff)

    async def _resolve_by_direct_id(self, device_user_id: str) -> EmployeeValidationResult:
        try:
            staff = await self.staff_directory.find_active_by_id(device_user_id)
        except Exception as e:
            logger.error(f"Staff lookup by id {device_user_id} failed: {e}")
            return EmployeeValidationResult(is_valid=False, error_message=f"Database query failed: {e}")

        if staff is None:
            return EmployeeValidationResult(
                is_valid=False,
                error_message=f"No active employee found with ID: {device_user_id}"
            )
        return self._valid_result(staff)

    @staticmethod
    def _valid_result(staff) -> EmployeeValidationResult:
        return EmployeeValidationResult(
            is_valid=True,
            staff_id=staff.id,
            staff_name=staff.name,
            staff_email=staff.email,
            employee_id=staff.employee_id
        )
