from __future__ import annotations

import pytest

from services.reconciliation.events import ChangeKind, RecordChange, ScanChange, decode_change
from services.scans.models import FruitMaturityScan, LeafDiseaseScan, RecordStatus, ScanStatus, ScanVariant
from services.scans.schema_validation import MalformedRow

UUID = "5f0e6a3c-2b1d-4c7e-9a8b-0123456789ab"


def scan_row(**over):
    row = {
        "id": 4,
        "scan_uuid": UUID,
        "status": "Validated",
        "created_at": "2024-05-01T08:00:00Z",
        "updated_at": "2024-05-01T08:30:00Z",
    }
    row.update(over)
    return row


def test_leaf_insert_takes_variant_from_table():
    change = decode_change({
        "eventType": "INSERT",
        "table": "leaf_disease_scans",
        "new": scan_row(disease_detected="Downy Mildew"),
        "old": {},
    })
    assert isinstance(change, ScanChange)
    assert change.kind is ChangeKind.INSERT
    assert isinstance(change.scan, LeafDiseaseScan)
    assert change.scan.classification == "Downy Mildew"
    assert change.key == (ScanVariant.LEAF_DISEASE, 4)


def test_fruit_update():
    change = decode_change({
        "eventType": "update",
        "table": "fruit_ripeness_scans",
        "new": scan_row(ripeness_stage="Unripe"),
    })
    assert change.kind is ChangeKind.UPDATE
    assert isinstance(change.scan, FruitMaturityScan)
    assert change.scan.status is ScanStatus.VALIDATED


def test_delete_carries_old_id_and_table_variant():
    change = decode_change({"eventType": "DELETE", "table": "leaf_disease_scans", "new": {}, "old": {"id": 4}})
    assert change.scan is None
    assert change.key == (ScanVariant.LEAF_DISEASE, 4)

    fruit = decode_change({"eventType": "DELETE", "table": "fruit_ripeness_scans", "old": {"id": 4}})
    assert fruit.key == (ScanVariant.FRUIT_MATURITY, 4)
    assert fruit.key != change.key


def test_ledger_events():
    insert = decode_change({
        "eventType": "INSERT",
        "table": "validation_history",
        "new": {
            "id": 9,
            "scan_id": UUID,
            "scan_type": "leaf_disease",
            "expert_id": "11111111-1111-4111-8111-111111111111",
            "expert_name": "Dr. Santos",
            "ai_prediction": "Cercospora",
            "expert_validation": "Cercospora",
            "status": "Validated",
            "validated_at": "2024-05-01T09:00:00Z",
        },
    })
    assert isinstance(insert, RecordChange)
    assert insert.record.status is RecordStatus.VALIDATED
    assert insert.key == 9

    delete = decode_change({"eventType": "DELETE", "table": "validation_history", "old": {"id": 9}})
    assert delete.record is None
    assert delete.key == 9


@pytest.mark.parametrize(
    "payload",
    [
        "INSERT",
        {"eventType": "TRUNCATE", "table": "leaf_disease_scans"},
        {"eventType": "INSERT", "table": "profiles", "new": scan_row()},
        {"eventType": "DELETE", "table": "leaf_disease_scans", "old": {}},
        {"eventType": "UPDATE", "table": "leaf_disease_scans", "new": {"id": 4}},
        {"eventType": "INSERT", "table": "validation_history", "new": None},
    ],
)
def test_malformed_payloads(payload):
    with pytest.raises(MalformedRow):
        decode_change(payload)
