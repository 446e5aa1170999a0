import threading
from datetime import datetime

import pytest

from mediablast.core.exceptions import ConcurrencyConflict, ProviderTransientError, ValidationError
from mediablast.core.locks import blast_lock_key
from mediablast.core.security import make_artifact_token
from mediablast.models.report import Report
from mediablast.models.report_item import (
    ReportItem, GEN_DONE, GEN_FAILED,
    DELIVERY_CLAIMED, DELIVERY_DELIVERED, DELIVERY_DISABLED, DELIVERY_ERROR,
    DELIVERY_FAILED, DELIVERY_PENDING, DELIVERY_QUEUED, DELIVERY_SENT,
)
from mediablast.services.blast_coordinator import (
    BlastCoordinator, CLAIM_EXPIRED_ERROR, delivery_status_for, share_link,
)
from mediablast.services.delivery_channel import DeliveryStatusInfo, SendResult


def _mark_done(session_factory, report_id, rows=None, **extra):
    """生成完了状態にする (rows 省略時は全件)"""
    db = session_factory()
    try:
        for item in db.query(ReportItem).filter(ReportItem.report_id == report_id).all():
            if rows is not None and item.row_number not in rows:
                continue
            item.status = GEN_DONE
            item.artifact_url = f"https://cdn.example.com/{item.id}.mp4"
            for key, value in extra.items():
                setattr(item, key, value)
        db.commit()
    finally:
        db.close()


def _items(session_factory, report_id):
    db = session_factory()
    try:
        return db.query(ReportItem).filter(ReportItem.report_id == report_id).order_by(ReportItem.row_number).all()
    finally:
        db.close()


def _report(session_factory, report_id):
    db = session_factory()
    try:
        return db.query(Report).filter(Report.id == report_id).first()
    finally:
        db.close()


def test_claims_are_disjoint(make_report, blast, session_factory):
    report = make_report(6)
    _mark_done(session_factory, report.id)

    _, first = blast.claim_batch(report.id)
    _, second = blast.claim_batch(report.id)

    assert len(first) == 6
    assert second == []
    assert set(first) == {i.id for i in _items(session_factory, report.id)}
    assert all(i.delivery_status == DELIVERY_CLAIMED for i in _items(session_factory, report.id))


def test_claims_from_parallel_threads_never_overlap(make_report, blast, session_factory):
    report = make_report(20)
    _mark_done(session_factory, report.id)
    claimed = []
    barrier = threading.Barrier(2)

    def claim():
        barrier.wait()
        claimed.append(blast.claim_batch(report.id)[1])

    threads = [threading.Thread(target=claim) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    first, second = claimed
    assert not set(first) & set(second)
    assert len(first) + len(second) == 20


def test_blast_sends_share_link_and_records_results(make_report, blast, channel, session_factory):
    report = make_report(2, delivery_template="Hai :name, video: :link")
    _mark_done(session_factory, report.id)

    summary = blast.run_blast(report.id)

    assert summary == {"claimed": 2, "sent": 2, "failed": 0}
    first, second = _items(session_factory, report.id)
    message = channel.sent_messages[0].message
    assert message == f"Hai User 1, video: https://blast.example.com/api/share/{make_artifact_token(report.id, first.id)}.mp4"
    assert first.delivery_status == DELIVERY_QUEUED
    assert first.delivery_message_id.startswith("msg-")
    assert first.delivered_at is not None
    assert _report(session_factory, report.id).delivery_sent_count == 2


def test_failed_recipient_is_marked_error(make_report, blast, channel, session_factory):
    report = make_report(2)
    _mark_done(session_factory, report.id)
    channel.outcomes["081234560002"] = ["Phone number not registered on WhatsApp"]

    summary = blast.run_blast(report.id)

    assert summary["sent"] == 1 and summary["failed"] == 1
    first, second = _items(session_factory, report.id)
    assert first.delivery_status == DELIVERY_QUEUED
    assert second.delivery_status == DELIVERY_ERROR
    assert second.delivery_error == "Phone number not registered on WhatsApp"
    saved = _report(session_factory, report.id)
    assert saved.delivery_sent_count == 1
    assert saved.delivery_failed_count == 1


def test_only_generated_items_are_claimed(make_report, reports, blast, channel, session_factory):
    report = make_report(4)
    _mark_done(session_factory, report.id, rows={1, 2, 3})
    items = _items(session_factory, report.id)
    reports.toggle_exclude(report.id, items[2].id)

    blast.run_blast(report.id)

    assert sorted(m.correlation_id for m in channel.sent_messages) == sorted([str(items[0].id), str(items[1].id)])
    statuses = [i.delivery_status for i in _items(session_factory, report.id)]
    assert statuses == [DELIVERY_QUEUED, DELIVERY_QUEUED, DELIVERY_PENDING, DELIVERY_PENDING]


def test_preview_only_report_is_never_blasted(make_report, blast, channel, session_factory):
    report = make_report(2, preview_only=True)
    _mark_done(session_factory, report.id)

    assert blast.run_blast(report.id) == {"claimed": 0, "sent": 0, "failed": 0}
    assert channel.calls == []
    assert all(i.delivery_status == DELIVERY_DISABLED for i in _items(session_factory, report.id))


def test_concurrent_blast_is_a_no_op(make_report, blast, channel, session_factory):
    report = make_report(2)
    _mark_done(session_factory, report.id)
    started = threading.Event()
    release = threading.Event()

    def block(messages):
        started.set()
        release.wait(timeout=5)

    channel.before_send = block
    results = []
    runner = threading.Thread(target=lambda: results.append(blast.run_blast(report.id)))
    runner.start()
    assert started.wait(timeout=5)

    assert blast.run_blast(report.id) is None

    release.set()
    runner.join(timeout=5)
    assert results[0]["sent"] == 2
    assert len(channel.calls) == 1


def test_unexpected_error_leaves_nothing_claimed(make_report, sender, locks, session_factory):
    alerts = []

    class BrokenChannel:
        def send_batch(self, messages):
            raise RuntimeError("socket closed")

    sender.channel = BrokenChannel()
    coordinator = BlastCoordinator(
        sender, locks, session_factory=session_factory, max_attempts=1,
        alert=lambda **kwargs: alerts.append(kwargs),
    )
    report = make_report(3)
    _mark_done(session_factory, report.id)

    with pytest.raises(RuntimeError):
        coordinator.run_blast(report.id)

    items = _items(session_factory, report.id)
    assert all(i.delivery_status == DELIVERY_ERROR for i in items)
    assert all(i.delivery_error == "Blast failed: socket closed" for i in items)
    assert alerts[0]["report_id"] == report.id
    assert alerts[0]["details"]["marked_error"] == 3
    assert not locks.is_held(blast_lock_key(report.id))


def test_transient_errors_are_retried_within_blast(make_report, blast, channel, session_factory):
    report = make_report(1)
    _mark_done(session_factory, report.id)
    channel.outcomes["081234560001"] = ["timeout", None]

    summary = blast.run_blast(report.id)

    assert summary["sent"] == 1
    assert len(channel.calls) == 2


def test_retry_failed_delivery_resets_and_reblasts(make_report, blast, channel, session_factory):
    report = make_report(3)
    _mark_done(session_factory, report.id)
    channel.outcomes["081234560003"] = ["Invalid phone number format"]
    blast.run_blast(report.id)
    channel.outcomes.clear()

    result = blast.retry_failed_delivery(report.id)

    assert result["reset"] == 1
    assert result["blast"]["sent"] == 1
    assert all(i.delivery_status == DELIVERY_QUEUED for i in _items(session_factory, report.id))
    assert _report(session_factory, report.id).delivery_failed_count == 0


def test_retry_failed_delivery_without_failures(make_report, blast, session_factory):
    report = make_report(1)
    assert blast.retry_failed_delivery(report.id) == {"reset": 0, "blast": None}


def test_resend_item(make_report, blast, channel, session_factory):
    report = make_report(2)
    _mark_done(session_factory, report.id)
    blast.run_blast(report.id)
    first = _items(session_factory, report.id)[0]

    item = blast.resend_item(report.id, first.id)

    assert item.delivery_status == DELIVERY_QUEUED
    assert channel.sent_messages[-1].correlation_id == str(first.id)
    assert len(channel.calls) == 2


def test_resend_requires_generated_artifact(make_report, blast, session_factory):
    report = make_report(1)
    item = _items(session_factory, report.id)[0]

    with pytest.raises(ValidationError):
        blast.resend_item(report.id, item.id)


def test_resend_rejected_while_blast_holds_lock(make_report, blast, locks, session_factory):
    report = make_report(1)
    _mark_done(session_factory, report.id)
    item = _items(session_factory, report.id)[0]

    with locks.hold(blast_lock_key(report.id)):
        with pytest.raises(ConcurrencyConflict):
            blast.resend_item(report.id, item.id)


def test_sync_delivery_status_maps_channel_states(make_report, blast, channel, session_factory):
    report = make_report(4)
    _mark_done(session_factory, report.id)
    blast.run_blast(report.id)
    items = _items(session_factory, report.id)
    channel.delivery_statuses = {
        items[0].delivery_message_id: DeliveryStatusInfo(status="read"),
        items[1].delivery_message_id: DeliveryStatusInfo(status="rejected"),
        items[2].delivery_message_id: DeliveryStatusInfo(status="pending"),
    }

    original = channel.get_delivery_status

    def lookup(message_id):
        if message_id == items[3].delivery_message_id:
            raise ProviderTransientError("HTTP 502")
        return original(message_id)

    channel.get_delivery_status = lookup

    summary = blast.sync_delivery_status(report.id)

    assert summary["checked"] == 4
    assert summary["delivered"] == 1
    assert summary["failed"] == 1
    assert summary["errors"] == 1
    first, second, third, fourth = _items(session_factory, report.id)
    assert first.delivery_status == DELIVERY_DELIVERED
    assert second.delivery_status == DELIVERY_ERROR
    assert second.delivery_error == "Wablas status: rejected"
    assert third.delivery_status == DELIVERY_QUEUED
    assert fourth.delivery_status == DELIVERY_QUEUED
    saved = _report(session_factory, report.id)
    assert saved.delivery_sent_count == 3
    assert saved.delivery_failed_count == 1


def test_recover_stale_claims(make_report, blast, locks, session_factory):
    stale = make_report(2)
    held = make_report(1)
    long_ago = datetime(2000, 1, 1)
    _mark_done(session_factory, stale.id, delivery_status=DELIVERY_CLAIMED, delivery_claimed_at=long_ago)
    _mark_done(session_factory, held.id, delivery_status=DELIVERY_CLAIMED, delivery_claimed_at=long_ago)

    with locks.hold(blast_lock_key(held.id)):
        recovered = blast.recover_stale_claims(timeout_minutes=30)

    assert recovered == 2
    assert all(i.delivery_error == CLAIM_EXPIRED_ERROR for i in _items(session_factory, stale.id))
    assert _items(session_factory, held.id)[0].delivery_status == DELIVERY_CLAIMED
    assert _report(session_factory, stale.id).delivery_failed_count == 2


def test_fresh_claims_are_left_alone(make_report, blast, session_factory):
    report = make_report(1)
    _mark_done(session_factory, report.id)
    blast.claim_batch(report.id)

    assert blast.recover_stale_claims(timeout_minutes=30) == 0


def test_find_reports_ready_for_blast(make_report, blast, session_factory):
    ready = make_report(1)
    make_report(1)
    failed = make_report(1)
    _mark_done(session_factory, ready.id)
    _mark_done(session_factory, failed.id, status=GEN_FAILED, delivery_status=DELIVERY_FAILED)

    assert blast.find_reports_ready_for_blast() == [ready.id]


def test_delivery_status_for_success_results():
    assert delivery_status_for(SendResult(correlation_id="1", success=True, status="pending")) == DELIVERY_QUEUED
    assert delivery_status_for(SendResult(correlation_id="1", success=True, status="read")) == DELIVERY_DELIVERED
    assert delivery_status_for(SendResult(correlation_id="1", success=True)) == DELIVERY_SENT


def test_share_link_format():
    assert share_link(3, 4, "https://x.test/") == f"https://x.test/api/share/{make_artifact_token(3, 4)}.mp4"
