from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from services.scans.models import Expert, FruitMaturityScan, LeafDiseaseScan, ScanStatus

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime, step_s: float = 0.0):
        self.now = now
        self.step_s = step_s

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=self.step_s)
        return current

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def scan_uuid(n: int) -> str:
    return f"00000000-0000-4000-8000-{n:012d}"


@pytest.fixture
def clock():
    return FakeClock(T0 + timedelta(hours=1))


@pytest.fixture
def expert_e():
    return Expert(id="11111111-1111-4111-8111-111111111111", display_name="Dr. Santos")


@pytest.fixture
def expert_f():
    return Expert(id="22222222-2222-4222-8222-222222222222", display_name="Dr. Cruz")


@pytest.fixture
def make_leaf():
    def make(scan_id=1, *, status=ScanStatus.PENDING_VALIDATION, disease="Cercospora", **kw):
        created = kw.pop("created_at", T0 + timedelta(minutes=scan_id))
        return LeafDiseaseScan(
            id=scan_id,
            uuid=kw.pop("uuid", scan_uuid(scan_id)),
            status=status,
            created_at=created,
            updated_at=kw.pop("updated_at", created),
            disease_detected=disease,
            **kw,
        )

    return make


@pytest.fixture
def make_fruit():
    def make(scan_id=100, *, status=ScanStatus.PENDING_VALIDATION, stage="Ripe", **kw):
        created = kw.pop("created_at", T0 + timedelta(minutes=scan_id))
        return FruitMaturityScan(
            id=scan_id,
            uuid=kw.pop("uuid", scan_uuid(scan_id)),
            status=status,
            created_at=created,
            updated_at=kw.pop("updated_at", created),
            ripeness_stage=stage,
            **kw,
        )

    return make
