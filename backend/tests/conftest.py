import os
import threading
import itertools

# mediablast のインポート前に設定する (engine/settings はインポート時に生成される)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/15")
os.environ.setdefault("ARTIFACT_TOKEN_SECRET", "test-secret")
os.environ.setdefault("DELIVERY_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("DELIVERY_BATCH_DELAY_SECONDS", "0")
os.environ.setdefault("SITE_URL", "https://blast.example.com")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("ALERT_EMAILS", "")

import pytest
from sqlalchemy.orm import sessionmaker

import mediablast.models  # noqa: F401
from mediablast.core.database import Base, build_engine
from mediablast.core.locks import InProcessLockRegistry
from mediablast.services.blast_coordinator import BlastCoordinator
from mediablast.services.bulk_sender import BulkRetrySender
from mediablast.services.delivery_channel import DeliveryStatusInfo, OutboundMessage, SendResult
from mediablast.services.generation_pool import GenerationWorkerPool
from mediablast.services.generation_provider import (
    JobSpec, JobStatus, STATUS_COMPLETED, STATUS_FAILED, STATUS_NOT_FOUND, STATUS_PROCESSING,
)
from mediablast.services.report_service import ReportService
from mediablast.services.status_reconciler import StatusReconciler


class FakeGenerationProvider:
    """submit はジョブIDを払い出し、get_status は statuses に設定した結果を返す"""

    def __init__(self):
        self._ids = itertools.count(1)
        self._guard = threading.Lock()
        self.submitted: list[JobSpec] = []
        self.jobs: dict[str, str] = {}  # job_id -> correlation_id
        self.statuses: dict[str, JobStatus] = {}
        self.fail_for: set[str] = set()  # 投入を失敗させる correlation_id
        self.status_errors: set[str] = set()  # 照会で例外を送出する job_id
        self.before_submit = None

    def submit(self, spec: JobSpec) -> str:
        if self.before_submit is not None:
            self.before_submit(spec)
        if spec.correlation_id in self.fail_for:
            raise RuntimeError(f"submit rejected: {spec.correlation_id}")
        with self._guard:
            job_id = f"job-{next(self._ids)}"
            self.submitted.append(spec)
            self.jobs[job_id] = spec.correlation_id
        return job_id

    def get_status(self, job_id: str) -> JobStatus:
        if job_id in self.status_errors:
            raise RuntimeError("status endpoint down")
        return self.statuses.get(job_id, JobStatus(status=STATUS_PROCESSING))

    def job_for(self, item_id: int) -> str:
        for job_id, correlation_id in self.jobs.items():
            if correlation_id == str(item_id):
                return job_id
        raise KeyError(item_id)

    def complete(self, item_id: int, url: str = None):
        job_id = self.job_for(item_id)
        self.statuses[job_id] = JobStatus(status=STATUS_COMPLETED, result_url=url or f"https://cdn.example.com/{job_id}.mp4")

    def fail(self, item_id: int, error: str):
        self.statuses[self.job_for(item_id)] = JobStatus(status=STATUS_FAILED, error=error)


class FakeTranslationProvider:
    def __init__(self):
        self._ids = itertools.count(1)
        self.submitted: list[tuple[str, str]] = []
        self.statuses: dict[str, JobStatus] = {}

    def submit_secondary(self, result_url: str, language: str) -> str:
        job_id = f"tr-{next(self._ids)}"
        self.submitted.append((result_url, language))
        return job_id

    def get_secondary_status(self, job_id: str) -> JobStatus:
        return self.statuses.get(job_id, JobStatus(status=STATUS_PROCESSING))


class FakeChannel:
    """
    送信結果は宛先番号ごとに outcomes で指定する (既定は成功)。
    outcomes[phone] は試行ごとのエラー文字列リスト (None は成功)。
    """

    def __init__(self):
        self.calls: list[list[OutboundMessage]] = []
        self.outcomes: dict[str, list] = {}
        self.status_for_success = "pending"
        self.delivery_statuses: dict[str, DeliveryStatusInfo] = {}
        self.before_send = None
        self._attempts: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._guard = threading.Lock()

    def send_one(self, phone: str, message: str) -> SendResult:
        return self.send_batch([OutboundMessage(correlation_id="", phone=phone, message=message)])[0]

    def send_batch(self, messages: list[OutboundMessage]) -> list[SendResult]:
        if self.before_send is not None:
            self.before_send(messages)
        with self._guard:
            self.calls.append(list(messages))
        results = []
        for m in messages:
            plan = self.outcomes.get(m.phone, [None])
            with self._guard:
                attempt = self._attempts.get(m.correlation_id, 0)
                self._attempts[m.correlation_id] = attempt + 1
            error = plan[min(attempt, len(plan) - 1)]
            if error is None:
                results.append(SendResult(
                    correlation_id=m.correlation_id, success=True, phone=m.phone,
                    message_id=f"msg-{next(self._ids)}", status=self.status_for_success,
                ))
            else:
                results.append(SendResult(
                    correlation_id=m.correlation_id, success=False, phone=m.phone, error=error,
                ))
        return results

    def get_delivery_status(self, message_id: str) -> DeliveryStatusInfo:
        return self.delivery_statuses.get(message_id, DeliveryStatusInfo(status="sent"))

    @property
    def sent_messages(self) -> list[OutboundMessage]:
        return [m for call in self.calls for m in call]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def provider():
    return FakeGenerationProvider()


@pytest.fixture
def translation():
    return FakeTranslationProvider()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def locks():
    return InProcessLockRegistry()


@pytest.fixture
def pool(provider, session_factory):
    pool = GenerationWorkerPool(provider, session_factory=session_factory, parallelism=4, progress_interval=2)
    yield pool
    pool.shutdown()


@pytest.fixture
def reconciler(provider, translation, session_factory):
    reconciler = StatusReconciler(
        provider,
        secondary_provider=translation,
        session_factory=session_factory,
        parallelism=4,
        parallel_threshold=10,
    )
    yield reconciler
    reconciler.shutdown()


@pytest.fixture
def sender(channel):
    return BulkRetrySender(channel, batch_size=100, retry_delay=0, batch_delay=0, sleep=lambda s: None)


@pytest.fixture
def blast(sender, locks, session_factory):
    return BlastCoordinator(
        sender, locks, session_factory=session_factory, max_attempts=3,
        site_url="https://blast.example.com", sleep=lambda s: None,
    )


@pytest.fixture
def reports(pool, reconciler, blast, locks, session_factory):
    return ReportService(pool, reconciler, blast, locks=locks, session_factory=session_factory)


def recipients(n: int, phone: str = None) -> list[dict]:
    return [{"name": f"User {i}", "phone": phone or f"08123456{i:04d}"} for i in range(1, n + 1)]


@pytest.fixture
def make_report(reports):
    def _make(n: int = 3, **kwargs):
        kwargs.setdefault("name", "Campaign")
        kwargs.setdefault("message_template", "Halo :name")
        return reports.create_report(recipients=kwargs.pop("recipients", None) or recipients(n), **kwargs)
    return _make
