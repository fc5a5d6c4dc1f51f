"""
Pytest configuration and fixtures for the club scheduling engine tests
"""

import pytest
import sys
from datetime import datetime, time
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from database.memory_store import InMemoryStore
from engine.bookings import FacilityBookingService
from engine.config import BookingSettings, LedgerSettings, RecurrenceSettings
from engine.conflicts import BookingConflictResolver
from engine.equipment import EquipmentAllocator
from engine.limits import BookingLimitEnforcer
from engine.locks import KeyedLockRegistry
from engine.notifications import NotificationPublisher
from engine.occurrences import EventOccurrenceManager
from engine.recurrence import RecurrenceExpander
from engine.registration import RegistrationLedger
from engine.schemas import Event, Facility, Member, MembershipTier


TENANT = "club-a"
OTHER_TENANT = "club-b"


@pytest.fixture(scope="function")
def now():
    """기준 시각 (2024-01-01 월요일 08:00)"""
    return datetime(2024, 1, 1, 8, 0)


@pytest.fixture(scope="function")
def store():
    return InMemoryStore()


@pytest.fixture(scope="function")
def locks():
    return KeyedLockRegistry()


@pytest.fixture(scope="function")
def publisher():
    return NotificationPublisher()


@pytest.fixture(scope="function")
def booking_settings():
    return BookingSettings()


@pytest.fixture(scope="function")
def ledger_settings():
    return LedgerSettings()


@pytest.fixture(scope="function")
def recurrence_settings():
    return RecurrenceSettings()


@pytest.fixture(scope="function")
def facility(store):
    """06:00-22:00 운영, 예약 60-180분"""
    return store.save_facility(Facility(
        tenant_id=TENANT,
        name="Court 1",
        facility_type_id="court",
        operating_hours_start=time(6, 0),
        operating_hours_end=time(22, 0),
        min_booking_duration_minutes=60,
        max_booking_duration_minutes=180,
        max_booking_days_in_advance=30,
    ))


@pytest.fixture(scope="function")
def member(store):
    return store.save_member(Member(tenant_id=TENANT, name="김민수", tier=MembershipTier.premium))


@pytest.fixture(scope="function")
def resolver(store, booking_settings):
    return BookingConflictResolver(store, events=store, settings=booking_settings)


@pytest.fixture(scope="function")
def enforcer(store, booking_settings):
    return BookingLimitEnforcer(store, store, settings=booking_settings)


@pytest.fixture(scope="function")
def allocator(store, publisher, locks, ledger_settings):
    return EquipmentAllocator(store, events=store, publisher=publisher, locks=locks, settings=ledger_settings)


@pytest.fixture(scope="function")
def ledger(store, publisher, locks, ledger_settings):
    return RegistrationLedger(store, store, publisher=publisher, locks=locks, settings=ledger_settings)


@pytest.fixture(scope="function")
def manager(store, ledger, resolver, publisher, locks, recurrence_settings):
    return EventOccurrenceManager(
        store, store,
        ledger=ledger,
        resolver=resolver,
        expander=RecurrenceExpander(ceiling=recurrence_settings.max_occurrences_per_generation),
        publisher=publisher,
        locks=locks,
        settings=recurrence_settings,
    )


@pytest.fixture(scope="function")
def booking_service(store, resolver, enforcer, publisher, locks, booking_settings):
    return FacilityBookingService(
        store, store,
        events=store,
        resolver=resolver,
        enforcer=enforcer,
        publisher=publisher,
        locks=locks,
        settings=booking_settings,
    )


@pytest.fixture(scope="function")
def make_event(store):
    """단일 이벤트 생성 헬퍼"""

    def _make(**overrides):
        values = dict(
            tenant_id=TENANT,
            title="Foil Beginners",
            start_datetime=datetime(2024, 1, 3, 18, 0),
            end_datetime=datetime(2024, 1, 3, 19, 30),
            max_capacity=2,
            allow_waitlist=True,
        )
        values.update(overrides)
        return store.create_event(values["tenant_id"], Event(**values))

    return _make
