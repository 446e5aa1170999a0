import pytest

from mediablast.core.exceptions import ConcurrencyConflict
from mediablast.models.report import Report, REPORT_COMPLETED, REPORT_PROCESSING
from mediablast.models.report_item import ReportItem, GEN_DONE, GEN_FAILED, GEN_PENDING, GEN_PROCESSING
from mediablast.services.generation_pool import GenerationWorkerPool


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


def test_excluded_item_is_skipped_and_report_completes(make_report, reports, pool, reconciler, provider, session_factory):
    report = make_report(3)
    first, second, third = _items(session_factory, report.id)
    reports.toggle_exclude(report.id, third.id)

    result = pool.generate_report(report.id)
    assert result == {"total": 2, "submitted": 2, "failed": 0, "skipped": 0}

    provider.complete(first.id)
    provider.complete(second.id)
    reconciler.check_report(report.id)

    saved = _report(session_factory, report.id)
    assert saved.status == REPORT_COMPLETED
    assert saved.success_count == 2
    assert saved.total_records == 3
    assert saved.completed_at is not None

    statuses = {i.id: i.status for i in _items(session_factory, report.id)}
    assert statuses[third.id] == GEN_PENDING
    assert statuses[first.id] == GEN_DONE and statuses[second.id] == GEN_DONE


def test_scripts_are_resolved_per_recipient(make_report, pool, provider):
    report = make_report(2, message_template="Halo :name, nomor :phone")
    pool.generate_report(report.id)
    scripts = sorted(spec.script for spec in provider.submitted)
    assert scripts == ["Halo User 1, nomor 081234560001", "Halo User 2, nomor 081234560002"]


def test_submit_failure_does_not_abort_siblings(make_report, pool, provider, session_factory):
    report = make_report(5)
    items = _items(session_factory, report.id)
    provider.fail_for = {str(items[2].id)}

    result = pool.generate_report(report.id)
    assert result["submitted"] == 4
    assert result["failed"] == 1

    by_id = {i.id: i for i in _items(session_factory, report.id)}
    failed = by_id[items[2].id]
    assert failed.status == GEN_FAILED
    assert "submit rejected" in failed.error_message
    assert failed.artifact_url is None
    assert [by_id[i.id].status for i in items if i.id != failed.id] == [GEN_PROCESSING] * 4
    assert all(by_id[i.id].provider_job_id for i in items if i.id != failed.id)


def test_progress_counters_are_recomputed(make_report, pool, provider, session_factory):
    report = make_report(4)
    items = _items(session_factory, report.id)
    provider.fail_for = {str(items[0].id)}

    pool.generate_report(report.id)

    saved = _report(session_factory, report.id)
    assert saved.status == REPORT_PROCESSING
    assert saved.total_records == 4
    assert saved.failed_count == 1
    assert saved.processed_records == 1
    assert saved.success_count == 0


def test_failed_items_are_resubmitted_on_next_run(make_report, pool, provider, session_factory):
    report = make_report(2)
    items = _items(session_factory, report.id)
    provider.fail_for = {str(items[0].id)}
    pool.generate_report(report.id)

    provider.fail_for = set()
    result = pool.generate_report(report.id)

    assert result == {"total": 1, "submitted": 1, "failed": 0, "skipped": 0}
    assert _items(session_factory, report.id)[0].status == GEN_PROCESSING


def test_regenerate_single_item_uses_same_path(make_report, reports, pool, reconciler, provider, session_factory):
    report = make_report(2)
    pool.generate_report(report.id)
    items = _items(session_factory, report.id)
    for item in items:
        provider.complete(item.id)
    reconciler.check_report(report.id)
    assert _report(session_factory, report.id).status == REPORT_COMPLETED

    old_job = items[0].provider_job_id
    item = reports.regenerate_item(report.id, items[0].id)

    assert item.status == GEN_PROCESSING
    assert item.provider_job_id != old_job
    assert item.artifact_url is None
    assert _report(session_factory, report.id).status == REPORT_PROCESSING
    assert len(provider.submitted) == 3


def test_item_claimed_by_another_run_is_not_resubmitted(make_report, provider, session_factory):
    report = make_report(3)
    first, _, third = _items(session_factory, report.id)

    def other_run_takes_third(spec):
        if spec.correlation_id != str(first.id):
            return
        db = session_factory()
        try:
            item = db.query(ReportItem).filter(ReportItem.id == third.id).first()
            item.status = GEN_PROCESSING
            item.provider_job_id = "job-other"
            db.commit()
        finally:
            db.close()

    provider.before_submit = other_run_takes_third
    pool = GenerationWorkerPool(provider, session_factory=session_factory, parallelism=1)
    try:
        result = pool.generate_report(report.id)
    finally:
        pool.shutdown()

    assert result == {"total": 3, "submitted": 2, "failed": 0, "skipped": 1}
    assert str(third.id) not in [spec.correlation_id for spec in provider.submitted]
    assert _items(session_factory, report.id)[2].provider_job_id == "job-other"


def test_regenerate_during_generation_conflicts(make_report, reports, provider, session_factory):
    report = make_report(3)
    first, _, third = _items(session_factory, report.id)
    conflicts = []

    def regenerate_third(spec):
        if spec.correlation_id != str(first.id):
            return
        with pytest.raises(ConcurrencyConflict):
            reports.regenerate_item(report.id, third.id)
        conflicts.append(third.id)

    provider.before_submit = regenerate_third
    reports.start_generation(report.id)

    assert conflicts == [third.id]
    submitted = [spec.correlation_id for spec in provider.submitted]
    assert sorted(submitted) == sorted(str(i.id) for i in _items(session_factory, report.id))
