from mediablast.models.report import Report, REPORT_COMPLETED, REPORT_FAILED, REPORT_PENDING, REPORT_PROCESSING
from mediablast.models.report_item import (
    ReportItem, GEN_DONE, GEN_FAILED, GEN_PENDING, GEN_PROCESSING,
    DELIVERY_FAILED, DELIVERY_PENDING, DELIVERY_SENT,
)
import pytest

from mediablast.core.exceptions import InvariantViolation
from mediablast.services.report_state import MISSING_ARTIFACT_ERROR, check_artifact, refresh_status, truncate_error


def _set(session_factory, report_id, **by_row):
    """row_number -> dict(属性) でアイテムを直接更新"""
    db = session_factory()
    try:
        for item in db.query(ReportItem).filter(ReportItem.report_id == report_id).all():
            for key, value in by_row.get(f"row{item.row_number}", {}).items():
                setattr(item, key, value)
        db.commit()
    finally:
        db.close()


def _refresh(session_factory, report_id) -> Report:
    db = session_factory()
    try:
        return refresh_status(db, report_id)
    finally:
        db.close()


def _stored(session_factory, report_id) -> Report:
    db = session_factory()
    try:
        return db.query(Report).filter(Report.id == report_id).first()
    finally:
        db.close()


def _item(session_factory, report_id, row):
    db = session_factory()
    try:
        return db.query(ReportItem).filter(ReportItem.report_id == report_id, ReportItem.row_number == row).first()
    finally:
        db.close()


def test_done_without_artifact_is_downgraded(make_report, session_factory):
    report = make_report(2)
    _set(
        session_factory, report.id,
        row1={"status": GEN_DONE, "artifact_url": ""},
        row2={"status": GEN_DONE, "artifact_url": "https://cdn/x.mp4"},
    )

    saved = _refresh(session_factory, report.id)

    broken = _item(session_factory, report.id, 1)
    assert broken.status == GEN_FAILED
    assert broken.error_message == MISSING_ARTIFACT_ERROR
    assert broken.delivery_status == DELIVERY_FAILED
    assert saved.status == REPORT_FAILED
    assert saved.failed_count == 1
    assert saved.success_count == 1


def test_check_artifact():
    check_artifact(ReportItem(id=1, status=GEN_DONE, artifact_url="https://cdn/x.mp4"))
    check_artifact(ReportItem(id=2, status=GEN_PENDING, artifact_url=None))
    with pytest.raises(InvariantViolation, match="item 3"):
        check_artifact(ReportItem(id=3, status=GEN_DONE, artifact_url=""))


def test_downgrade_keeps_delivery_state_already_sent(make_report, session_factory):
    report = make_report(1)
    _set(session_factory, report.id, row1={"status": GEN_DONE, "artifact_url": None, "delivery_status": DELIVERY_SENT})

    _refresh(session_factory, report.id)

    item = _item(session_factory, report.id, 1)
    assert item.status == GEN_FAILED
    assert item.delivery_status == DELIVERY_SENT


def test_report_stays_open_while_items_in_flight(make_report, session_factory):
    report = make_report(3)
    _set(
        session_factory, report.id,
        row1={"status": GEN_DONE, "artifact_url": "u1"},
        row2={"status": GEN_PROCESSING},
        row3={"status": GEN_PENDING},
    )
    assert _refresh(session_factory, report.id).status == REPORT_PENDING

    _set(session_factory, report.id, row3={"status": GEN_DONE, "artifact_url": "u3"})
    assert _refresh(session_factory, report.id).status == REPORT_PENDING

    _set(session_factory, report.id, row2={"status": GEN_DONE, "artifact_url": "u2"})
    saved = _refresh(session_factory, report.id)
    assert saved.status == REPORT_COMPLETED
    assert saved.processed_records == 3


def test_completed_at_is_stamped_only_on_transition(make_report, session_factory):
    report = make_report(1)
    _set(session_factory, report.id, row1={"status": GEN_DONE, "artifact_url": "u"})
    _refresh(session_factory, report.id)
    first = _stored(session_factory, report.id).completed_at
    assert first is not None

    _refresh(session_factory, report.id)
    assert _stored(session_factory, report.id).completed_at == first


def test_terminal_report_reopens_when_item_reset(make_report, session_factory):
    report = make_report(1)
    _set(session_factory, report.id, row1={"status": GEN_FAILED})
    assert _refresh(session_factory, report.id).status == REPORT_FAILED

    _set(session_factory, report.id, row1={"status": GEN_PENDING})
    saved = _refresh(session_factory, report.id)
    assert saved.status == REPORT_PROCESSING
    assert saved.completed_at is None


def test_excluded_items_do_not_hold_report_open(make_report, reports, session_factory):
    report = make_report(2)
    second = _item(session_factory, report.id, 2)
    reports.toggle_exclude(report.id, second.id)
    _set(session_factory, report.id, row1={"status": GEN_DONE, "artifact_url": "u"})

    saved = _refresh(session_factory, report.id)

    assert saved.status == REPORT_COMPLETED
    assert saved.total_records == 2
    assert saved.success_count == 1


def test_terminal_status_iff_nothing_in_flight(make_report, session_factory):
    report = make_report(4)
    combos = [
        {"row1": {"status": GEN_DONE, "artifact_url": "u"}, "row2": {"status": GEN_PENDING}},
        {"row2": {"status": GEN_FAILED}, "row3": {"status": GEN_PROCESSING}},
        {"row3": {"status": GEN_DONE, "artifact_url": "u"}, "row4": {"status": GEN_DONE, "artifact_url": "u"}},
    ]
    for combo in combos:
        _set(session_factory, report.id, **combo)
        saved = _refresh(session_factory, report.id)
        in_flight = any(
            _item(session_factory, report.id, row).status in (GEN_PENDING, GEN_PROCESSING) for row in range(1, 5)
        )
        assert (saved.status in (REPORT_COMPLETED, REPORT_FAILED)) == (not in_flight)


def test_delivery_counts_follow_item_state(make_report, session_factory):
    report = make_report(3)
    _set(
        session_factory, report.id,
        row1={"delivery_status": DELIVERY_SENT},
        row2={"delivery_status": DELIVERY_FAILED},
        row3={"delivery_status": DELIVERY_PENDING},
    )

    saved = _refresh(session_factory, report.id)

    assert saved.delivery_sent_count == 1
    assert saved.delivery_failed_count == 1


def test_truncate_error():
    assert truncate_error("short") == "short"
    assert truncate_error("abcdef", limit=5) == "ab..."
    assert truncate_error(None) == ""
    assert truncate_error(ValueError("boom")) == "boom"
