from __future__ import annotations

from datetime import timedelta

import pytest

from services.reconciliation.cache import PendingMutation, ReconciliationCache
from services.reconciliation.events import ChangeKind, RecordChange, ScanChange
from services.scans.models import RecordStatus, ScanStatus, ScanVariant, ValidationRecord


def uid(n):
    return f"00000000-0000-4000-8000-{n:012d}"


U1 = uid(1)
U2 = uid(2)


def upsert(scan, kind=ChangeKind.UPDATE):
    return ScanChange(kind=kind, scan=scan)


def record_for(scan, *, record_id=1, validated_at, expert_validation="Healthy"):
    return ValidationRecord(
        id=record_id,
        scan_uuid=scan.uuid,
        scan_variant=ScanVariant.LEAF_DISEASE,
        expert_id="11111111-1111-4111-8111-111111111111",
        expert_name="Dr. Santos",
        ai_prediction=scan.classification,
        expert_validation=expert_validation,
        status=RecordStatus.CORRECTED,
        validated_at=validated_at,
    )


def snapshot(cache):
    return [(e.scan, e.last_known_updated_at) for e in (cache.entry(s.uuid) for s in cache.scans())]


def test_same_event_twice_is_idempotent(make_leaf):
    cache = ReconciliationCache()
    scan = make_leaf(1)
    change = upsert(make_leaf(1, status=ScanStatus.VALIDATED, updated_at=scan.updated_at + timedelta(minutes=5)))
    cache.replace_all([scan])

    assert cache.handle(change) is True
    once = snapshot(cache)
    assert cache.handle(change) is False
    assert snapshot(cache) == once


def test_stale_and_equal_events_are_discarded(make_leaf):
    cache = ReconciliationCache()
    current = make_leaf(1, status=ScanStatus.VALIDATED)
    cache.replace_all([current])

    older = make_leaf(1, updated_at=current.updated_at - timedelta(seconds=1))
    same = make_leaf(1, disease="Healthy", updated_at=current.updated_at)
    assert cache.handle(upsert(older)) is False
    assert cache.handle(upsert(same)) is False
    assert cache.scan_by_uuid(U1) == current

    newer = make_leaf(1, disease="Healthy", updated_at=current.updated_at + timedelta(seconds=1))
    assert cache.handle(upsert(newer)) is True
    assert cache.scan_by_uuid(U1).classification == "Healthy"
    assert cache.entry(U1).last_known_updated_at == newer.updated_at


def test_update_for_unknown_scan_is_inserted(make_leaf):
    cache = ReconciliationCache()
    assert cache.handle(upsert(make_leaf(5))) is True
    assert cache.scan_by_uuid(make_leaf(5).uuid).id == 5


def test_delete_event_drops_entry_and_draft(make_leaf):
    cache = ReconciliationCache()
    cache.replace_all([make_leaf(1), make_leaf(2)])
    cache.set_draft(U1, decision="Healthy")

    assert cache.handle(ScanChange(kind=ChangeKind.DELETE, scan_id=1, variant=ScanVariant.LEAF_DISEASE)) is True
    assert cache.scan_by_uuid(U1) is None
    assert cache.scan_by_id(1, ScanVariant.LEAF_DISEASE) is None
    assert cache.draft(U1).decision == ""
    assert cache.handle(ScanChange(kind=ChangeKind.DELETE, scan_id=1, variant=ScanVariant.LEAF_DISEASE)) is False


def test_pending_queue_excludes_non_reviewable_scans(make_leaf, make_fruit):
    cache = ReconciliationCache()
    keep_old = make_leaf(1)
    keep_new = make_fruit(2)
    cache.replace_all([
        keep_old,
        keep_new,
        make_leaf(3, status=ScanStatus.UNKNOWN),
        make_leaf(4, disease="Unknown"),
        make_leaf(5, disease="Non-Ampalaya Leaf"),
        make_fruit(6, stage="non ampalaya"),
        make_leaf(7, status=ScanStatus.VALIDATED),
    ])

    queue = cache.pending_queue()
    assert [s.id for s in queue] == [2, 1]

    queue.clear()
    assert len(cache.pending_queue()) == 2


def test_off_domain_patterns_are_configurable(make_leaf):
    cache = ReconciliationCache(off_domain_patterns=["weed"])
    cache.replace_all([make_leaf(1, disease="Weed"), make_leaf(2, disease="Non-Ampalaya")])
    assert [s.id for s in cache.pending_queue()] == [2]


def test_queue_is_recomputed_after_changes(make_leaf):
    cache = ReconciliationCache()
    cache.replace_all([make_leaf(1)])
    assert len(cache.pending_queue()) == 1

    validated = make_leaf(1, status=ScanStatus.VALIDATED, updated_at=make_leaf(1).updated_at + timedelta(minutes=1))
    cache.handle(upsert(validated))
    assert cache.pending_queue() == []


def test_optimistic_write_never_overwrites_newer_row(make_leaf):
    cache = ReconciliationCache()
    scan = make_leaf(1)
    cache.replace_all([scan])
    cache.mark_pending(U1, PendingMutation.VALIDATING)

    pushed = make_leaf(1, status=ScanStatus.UNKNOWN, updated_at=scan.updated_at + timedelta(minutes=10))
    cache.handle(upsert(pushed))

    applied = cache.apply_optimistic(U1, ScanStatus.VALIDATED, scan.updated_at + timedelta(minutes=5))
    assert applied is False
    assert cache.scan_by_uuid(U1).status is ScanStatus.UNKNOWN
    assert cache.entry(U1).pending_mutation is PendingMutation.VALIDATING


def test_echo_of_own_write_is_a_no_op(make_leaf):
    cache = ReconciliationCache()
    scan = make_leaf(1)
    cache.replace_all([scan])
    ts = scan.updated_at + timedelta(minutes=1)

    assert cache.apply_optimistic(U1, ScanStatus.VALIDATED, ts, expert_validation="Cercospora") is True
    echo = make_leaf(1, status=ScanStatus.VALIDATED, updated_at=ts)
    assert cache.handle(upsert(echo)) is False
    assert cache.scan_by_uuid(U1).expert_validation == "Cercospora"


def test_ledger_insert_flips_scan_until_row_catches_up(make_leaf):
    cache = ReconciliationCache()
    scan = make_leaf(1)
    cache.replace_all([scan])
    record = record_for(scan, validated_at=scan.updated_at + timedelta(minutes=1))

    assert cache.handle(RecordChange(kind=ChangeKind.INSERT, record=record)) is True
    flipped = cache.scan_by_uuid(U1)
    assert flipped.status is ScanStatus.VALIDATED
    assert flipped.expert_validation == "Healthy"
    assert cache.entry(U1).last_known_updated_at == scan.updated_at
    assert cache.pending_queue() == []
    assert cache.record(1) == record

    # replay is ignored
    assert cache.handle(RecordChange(kind=ChangeKind.INSERT, record=record)) is False

    # the authoritative scan row still lands afterwards
    row = make_leaf(1, status=ScanStatus.VALIDATED, updated_at=scan.updated_at + timedelta(minutes=2))
    assert cache.handle(upsert(row)) is True


def test_old_ledger_record_does_not_flip_scan(make_leaf):
    cache = ReconciliationCache()
    scan = make_leaf(1)
    cache.replace_all([scan])
    record = record_for(scan, validated_at=scan.updated_at - timedelta(minutes=1))

    cache.handle(RecordChange(kind=ChangeKind.INSERT, record=record))
    assert cache.scan_by_uuid(U1).status is ScanStatus.PENDING_VALIDATION
    assert cache.history() == [record]


def test_ledger_delete_and_forget(make_leaf):
    cache = ReconciliationCache()
    scan = make_leaf(1)
    cache.replace_all([scan], [
        record_for(scan, record_id=1, validated_at=scan.updated_at),
        record_for(scan, record_id=2, validated_at=scan.updated_at + timedelta(seconds=1)),
    ])
    assert [r.id for r in cache.history()] == [2, 1]

    assert cache.handle(RecordChange(kind=ChangeKind.DELETE, record_id=2)) is True
    assert cache.handle(RecordChange(kind=ChangeKind.DELETE, record_id=2)) is False
    assert cache.forget_record(1) is True
    assert cache.forget_record(1) is False
    assert cache.history() == []


def test_drafts_survive_refresh_only_for_present_scans(make_leaf):
    cache = ReconciliationCache()
    cache.replace_all([make_leaf(1), make_leaf(2)])
    cache.set_draft(U1, decision="Healthy")
    cache.set_draft(U1, comment="spots on lower leaves")
    cache.set_draft(U2, decision="Leaf Spot")

    assert cache.draft(U1).decision == "Healthy"
    assert cache.draft(U1).comment == "spots on lower leaves"

    cache.replace_all([make_leaf(1)])
    assert cache.draft(U1).decision == "Healthy"
    assert cache.draft(U2).decision == ""


def test_listeners_are_notified_and_removable(make_leaf):
    cache = ReconciliationCache()
    calls = []

    def broken():
        raise RuntimeError("listener bug")

    remove = cache.add_listener(lambda: calls.append("x"))
    cache.add_listener(broken)

    cache.handle(upsert(make_leaf(1)))
    assert calls == ["x"]

    remove()
    cache.handle(upsert(make_leaf(2)))
    assert calls == ["x"]


def test_mark_pending_on_unknown_scan():
    cache = ReconciliationCache()
    assert cache.mark_pending(uid(99), PendingMutation.REVERTING) is False
    assert cache.apply_optimistic(uid(99), ScanStatus.VALIDATED, None) is False


def test_unsupported_change_type():
    cache = ReconciliationCache()
    with pytest.raises(TypeError):
        cache.handle("not a change")


def test_leaf_and_fruit_with_same_id_are_separate_entries(make_leaf, make_fruit):
    cache = ReconciliationCache()
    leaf = make_leaf(7)
    fruit = make_fruit(7, uuid=uid(107))
    cache.replace_all([leaf, fruit])

    assert len(cache.scans()) == 2
    assert {s.uuid for s in cache.pending_queue()} == {leaf.uuid, fruit.uuid}
    assert cache.scan_by_id(7, ScanVariant.LEAF_DISEASE) == leaf
    assert cache.scan_by_id(7, ScanVariant.FRUIT_MATURITY) == fruit


def test_delete_only_removes_scan_from_its_own_table(make_leaf, make_fruit):
    cache = ReconciliationCache()
    leaf = make_leaf(7)
    fruit = make_fruit(7, uuid=uid(107))
    cache.replace_all([leaf, fruit])

    assert cache.handle(ScanChange(kind=ChangeKind.DELETE, scan_id=7, variant=ScanVariant.FRUIT_MATURITY)) is True

    assert cache.scan_by_uuid(fruit.uuid) is None
    assert cache.scan_by_uuid(leaf.uuid) == leaf
    assert [s.uuid for s in cache.pending_queue()] == [leaf.uuid]


def test_delete_without_variant_is_rejected(make_leaf):
    cache = ReconciliationCache()
    cache.replace_all([make_leaf(1)])
    with pytest.raises(ValueError):
        cache.handle(ScanChange(kind=ChangeKind.DELETE, scan_id=1))
    assert cache.scan_by_uuid(U1) is not None


def test_marker_belongs_to_whoever_set_it(make_leaf):
    cache = ReconciliationCache()
    cache.replace_all([make_leaf(1)])

    assert cache.mark_pending(U1, PendingMutation.VALIDATING) is True
    assert cache.mark_pending(U1, PendingMutation.REVERTING) is False

    cache.clear_pending(U1, PendingMutation.REVERTING)
    assert cache.entry(U1).pending_mutation is PendingMutation.VALIDATING

    cache.clear_pending(U1, PendingMutation.VALIDATING)
    assert cache.entry(U1).pending_mutation is None


def test_marker_survives_pushed_row_and_refresh(make_leaf):
    cache = ReconciliationCache()
    scan = make_leaf(1)
    cache.replace_all([scan])
    cache.set_draft(U1, decision="Healthy")
    cache.mark_pending(U1, PendingMutation.VALIDATING)

    cache.handle(upsert(make_leaf(1, disease="Healthy", updated_at=scan.updated_at + timedelta(seconds=1))))
    assert cache.entry(U1).pending_mutation is PendingMutation.VALIDATING

    cache.replace_all([scan, make_leaf(2)])
    assert cache.entry(U1).pending_mutation is PendingMutation.VALIDATING
    assert cache.entry(U2).pending_mutation is None
    assert cache.draft(U1).decision == "Healthy"
