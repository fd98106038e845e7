"""
生成编排测试：状态机、派发与对账
"""
import threading

import pytest

from genflow.core.exceptions import (
    InternalError,
    InvalidStateError,
    NotFoundError,
    ReconcileConflictError,
    UpstreamUnavailableError,
    ValidationError,
    VersionConflictError,
)
from genflow.models import GenerationStatus
from genflow.services.generation_store import UpdateOutcome, UpdateResult
from genflow.services.orchestrator import (
    GenerationOrchestrator,
    StatusReport,
    normalize_status,
)
from genflow.services.worker_client import DispatchResult, JobStatus, WorkerResponse

from conftest import FailingNotifier


def _report(status, **kwargs) -> StatusReport:
    return StatusReport(status=GenerationStatus(status), **kwargs)


class TestCreateRequest:
    def test_initial_state(self, new_request):
        record = new_request()

        assert record.status == GenerationStatus.PENDING_CLARIFICATION
        assert record.version == 1
        assert record.external_job_id is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"prompt": "   "},
            {"prompt": "长" * 2001},
            {"model": ""},
            {"media_type": "image"},
            {"provider": "unknown"},
        ],
    )
    def test_invalid_input(self, new_request, overrides):
        with pytest.raises(ValidationError):
            new_request(**overrides)

    def test_get_other_owner_is_not_found(self, orchestrator, new_request):
        record = new_request(owner_id="user-1")

        with pytest.raises(NotFoundError):
            orchestrator.get(record.id, owner_id="user-2")

    def test_list_active_and_pending(self, orchestrator, new_request, ready_request):
        new_request()
        ready = ready_request()
        cancelled = new_request()
        orchestrator.cancel(cancelled.id, cancelled.version)

        active_ids = {record.id for record in orchestrator.list_active("user-1")}
        assert ready.id in active_ids
        assert cancelled.id not in active_ids
        assert len(orchestrator.list_pending_clarifications("user-1")) == 1


class TestLifecycleScenario:
    def test_full_lifecycle(self, orchestrator, worker, notifier, new_request):
        record = new_request()
        assert record.status == GenerationStatus.PENDING_CLARIFICATION

        record = orchestrator.submit_clarification(record.id, {"duration": "10s"}, record.version)
        assert record.status == GenerationStatus.PENDING_CONFIRMATION

        record = orchestrator.confirm(record.id, record.version)
        assert record.status == GenerationStatus.QUEUED
        assert record.external_job_id == "job-1"
        payload = worker.calls[0][1]
        assert payload["parameters"]["clarificationResponses"] == {"duration": "10s"}

        outcome = orchestrator.reconcile(
            _report("processing", progress=40, external_job_id="job-1"), external_job_id="job-1"
        )
        assert outcome.generation.status == GenerationStatus.PROCESSING
        assert outcome.generation.progress == 40
        assert outcome.generation.started_at is not None

        outcome = orchestrator.reconcile(
            _report(
                "completed",
                result={"result_url": "https://x/y.mp4"},
                external_job_id="job-1",
            ),
            external_job_id="job-1",
        )
        completed = outcome.generation
        assert completed.status == GenerationStatus.COMPLETED
        assert completed.result["result_url"] == "https://x/y.mp4"
        assert completed.progress == 100
        assert notifier.kinds().count("result") == 1

        posts_before = len(notifier.posts)
        replay = orchestrator.reconcile(
            _report("processing", progress=40, external_job_id="job-1"), external_job_id="job-1"
        )
        assert replay.changed is False
        assert replay.generation.version == completed.version
        assert len(notifier.posts) == posts_before


class TestReconcile:
    @pytest.fixture
    def queued(self, orchestrator, ready_request):
        record = ready_request()
        return orchestrator.confirm(record.id, record.version)

    def test_duplicate_delivery_is_noop(self, orchestrator, notifier, queued):
        report = _report("processing", progress=40, external_job_id="job-1")
        first = orchestrator.reconcile(report, external_job_id="job-1")
        posts = len(notifier.posts)

        second = orchestrator.reconcile(report, external_job_id="job-1")

        assert second.changed is False
        assert second.generation.version == first.generation.version
        assert len(notifier.posts) == posts

    def test_out_of_order_is_ignored(self, orchestrator, queued):
        orchestrator.reconcile(_report("processing", progress=30), generation_id=queued.id)
        done = orchestrator.reconcile(
            _report("completed", result={"result_url": "https://x/y.mp4"}), generation_id=queued.id
        )

        stale = orchestrator.reconcile(_report("queued"), generation_id=queued.id)

        assert stale.changed is False
        assert stale.generation.status == GenerationStatus.COMPLETED
        assert stale.generation.version == done.generation.version

    def test_progress_only_moves_forward(self, orchestrator, notifier, queued):
        orchestrator.reconcile(_report("processing", progress=50), generation_id=queued.id)
        posts = len(notifier.posts)

        lower = orchestrator.reconcile(_report("processing", progress=20), generation_id=queued.id)
        assert lower.changed is False
        assert lower.generation.progress == 50

        higher = orchestrator.reconcile(_report("processing", progress=70), generation_id=queued.id)
        assert higher.changed is True
        assert higher.status_changed is False
        assert higher.generation.progress == 70
        assert len(notifier.posts) == posts

    def test_progress_ignored_before_processing(self, orchestrator, queued):
        outcome = orchestrator.reconcile(
            _report("queued", progress=70, external_job_id="job-1"), external_job_id="job-1"
        )

        assert outcome.changed is False
        assert outcome.generation.status == GenerationStatus.QUEUED
        assert outcome.generation.progress == 0
        assert outcome.generation.version == queued.version

    @pytest.mark.parametrize("bad_progress", [-5, 150, "40%"])
    def test_out_of_range_progress_is_dropped(self, orchestrator, queued, bad_progress):
        outcome = orchestrator.reconcile(
            _report("processing", progress=bad_progress), generation_id=queued.id
        )

        assert outcome.generation.status == GenerationStatus.PROCESSING
        assert outcome.generation.progress == 0

    def test_field_gating(self, orchestrator, queued):
        outcome = orchestrator.reconcile(
            _report("processing", result={"result_url": "https://x/early.mp4"}, error_message="噪声"),
            generation_id=queued.id,
        )
        assert outcome.generation.result is None
        assert outcome.generation.error_message is None

        failed = orchestrator.reconcile(_report("failed"), generation_id=queued.id)
        assert failed.generation.status == GenerationStatus.FAILED
        assert failed.generation.error_message == "未知错误"
        assert failed.generation.failed_at is not None

    def test_terminal_state_is_final(self, orchestrator, queued):
        orchestrator.reconcile(_report("failed", error_message="配额不足"), generation_id=queued.id)

        late = orchestrator.reconcile(
            _report("completed", result={"result_url": "https://x/y.mp4"}), generation_id=queued.id
        )

        assert late.changed is False
        assert late.generation.status == GenerationStatus.FAILED
        assert late.generation.error_message == "配额不足"

    def test_mismatched_job_id_is_ignored(self, orchestrator, queued):
        outcome = orchestrator.reconcile(
            _report("processing", progress=10, external_job_id="job-other"),
            generation_id=queued.id,
        )

        assert outcome.changed is False
        assert outcome.generation.status == GenerationStatus.QUEUED

    def test_falls_back_to_generation_id(self, orchestrator, ready_request):
        record = ready_request()

        outcome = orchestrator.reconcile(
            _report("pending_clarification", clarification_questions={"1": "画幅？"}, external_job_id="job-9"),
            generation_id=record.id,
            external_job_id="job-9",
        )

        assert outcome.generation.external_job_id == "job-9"

    def test_unknown_record(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.reconcile(_report("processing"), external_job_id="job-missing")

        with pytest.raises(ValidationError):
            orchestrator.reconcile(_report("processing"))

    def test_owner_mismatch_is_not_found(self, orchestrator, queued):
        with pytest.raises(NotFoundError):
            orchestrator.reconcile(
                _report("processing"), external_job_id="job-1", owner_id="someone-else"
            )

    def test_clarification_reentry(self, orchestrator, notifier, ready_request):
        record = ready_request()
        assert record.status == GenerationStatus.PENDING_CONFIRMATION

        outcome = orchestrator.reconcile(
            _report("pending_clarification", clarification_questions={"1": "需要配乐吗？"}),
            generation_id=record.id,
        )

        updated = outcome.generation
        assert updated.status == GenerationStatus.PENDING_CLARIFICATION
        assert updated.clarification_questions == {"1": "需要配乐吗？"}
        assert updated.clarification_responses is None
        assert updated.version == record.version + 1
        assert "需要配乐吗？" in notifier.posts[-1]["text"]

    def test_follow_up_question_replaces_questions(self, orchestrator, new_request):
        record = new_request()

        outcome = orchestrator.reconcile(
            _report("pending_clarification", clarification_questions={"1": "画幅？"}),
            generation_id=record.id,
        )

        assert outcome.changed is True
        assert outcome.status_changed is False
        assert outcome.generation.clarification_questions == {"1": "画幅？"}

    def test_repeated_conflict_raises(self, orchestrator, store, queued, monkeypatch):
        def always_conflict(generation_id, expected_version, mutator):
            return UpdateResult(UpdateOutcome.CONFLICT, store.get(generation_id))

        monkeypatch.setattr(store, "update_if", always_conflict)

        with pytest.raises(ReconcileConflictError):
            orchestrator.reconcile(_report("processing"), generation_id=queued.id)

    def test_notification_failure_keeps_state(self, store, worker, ready_request, orchestrator):
        record = ready_request()
        queued = orchestrator.confirm(record.id, record.version)
        quiet = GenerationOrchestrator(store=store, worker_client=worker, notifier=FailingNotifier())

        outcome = quiet.reconcile(_report("processing", progress=5), generation_id=queued.id)

        assert outcome.changed is True
        assert store.get(queued.id).status == GenerationStatus.PROCESSING


class TestConfirm:
    def test_confirm_requires_pending_confirmation(self, orchestrator, new_request):
        record = new_request()

        with pytest.raises(InvalidStateError):
            orchestrator.confirm(record.id, record.version)

    def test_stale_version_dispatches_once(self, orchestrator, worker, ready_request):
        record = ready_request()
        orchestrator.confirm(record.id, record.version)

        with pytest.raises(VersionConflictError):
            orchestrator.confirm(record.id, record.version)

        assert worker.count("dispatch") == 1

    def test_claim_conflict_raises_version_conflict(self, orchestrator, worker, ready_request):
        record = ready_request()
        orchestrator.reconcile(
            _report("pending_clarification", clarification_questions={"1": "?"}), generation_id=record.id
        )
        again = orchestrator.submit_clarification(record.id, {"duration": "8s"}, record.version + 1)

        with pytest.raises(VersionConflictError):
            orchestrator.confirm(record.id, record.version)

        assert again.status == GenerationStatus.PENDING_CONFIRMATION
        assert worker.count("dispatch") == 0

    def test_concurrent_confirms_dispatch_once(self, orchestrator, worker, ready_request):
        record = ready_request()
        start = threading.Barrier(2)
        outcomes: list = []

        def run():
            start.wait()
            try:
                outcomes.append(orchestrator.confirm(record.id, record.version))
            except VersionConflictError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        successes = [item for item in outcomes if not isinstance(item, Exception)]
        assert len(outcomes) == 2
        assert len(successes) == 1
        assert worker.count("dispatch") == 1

    def test_dispatch_failure_releases_claim(self, orchestrator, worker, store, ready_request):
        record = ready_request()
        worker.dispatch_response = WorkerResponse.fail("请求超时（30s）")

        with pytest.raises(UpstreamUnavailableError):
            orchestrator.confirm(record.id, record.version)

        current = store.get(record.id)
        assert current.status == GenerationStatus.PENDING_CONFIRMATION
        assert current.external_job_id is None

        # 撤回后可以用新版本号重试
        worker.dispatch_response = WorkerResponse.ok(DispatchResult(external_job_id="job-1"))
        retried = orchestrator.confirm(record.id, current.version)
        assert retried.status == GenerationStatus.QUEUED
        assert worker.count("dispatch") == 2

    def test_failed_release_keeps_claim_recoverable(self, orchestrator, worker, store, ready_request, monkeypatch):
        record = ready_request()
        worker.dispatch_response = WorkerResponse.fail("请求超时（30s）")
        original_update_if = store.update_if
        calls = []

        def release_fails(generation_id, expected_version, mutator):
            calls.append(expected_version)
            if len(calls) == 2:
                raise InternalError("更新生成记录失败", generation_id=generation_id)
            return original_update_if(generation_id, expected_version, mutator)

        monkeypatch.setattr(store, "update_if", release_fails)

        with pytest.raises(UpstreamUnavailableError):
            orchestrator.confirm(record.id, record.version)

        monkeypatch.setattr(store, "update_if", original_update_if)
        stuck = store.get(record.id)
        assert stuck.status == GenerationStatus.CONFIRMED
        assert stuck.external_job_id is None
        assert stuck.dispatch_attempts == 1

        # 占位未过期时视为派发进行中
        with pytest.raises(InvalidStateError):
            orchestrator.confirm(record.id, stuck.version)

        orchestrator.claim_timeout = 0
        worker.dispatch_response = WorkerResponse.ok(DispatchResult(external_job_id="job-1"))

        recovered = orchestrator.confirm(record.id, stuck.version)

        assert recovered.status == GenerationStatus.QUEUED
        assert recovered.external_job_id == "job-1"
        assert recovered.dispatch_attempts == 2
        assert worker.count("dispatch") == 2

    def test_expired_claim_requires_current_version(self, orchestrator, worker, store, ready_request):
        record = ready_request()
        orchestrator.claim_timeout = 0
        store.update_if(record.id, record.version, lambda d: setattr(d, "status", GenerationStatus.CONFIRMED))

        with pytest.raises(VersionConflictError):
            orchestrator.confirm(record.id, record.version)

        assert worker.count("dispatch") == 0

    def test_worker_requests_clarification(self, orchestrator, worker, ready_request):
        record = ready_request()
        worker.dispatch_response = WorkerResponse.ok(
            DispatchResult(
                external_job_id="job-7",
                clarification_required=True,
                clarification_questions={"1": "需要字幕吗？"},
            )
        )

        updated = orchestrator.confirm(record.id, record.version)

        assert updated.status == GenerationStatus.PENDING_CLARIFICATION
        assert updated.external_job_id == "job-7"
        assert updated.clarification_questions == {"1": "需要字幕吗？"}
        assert updated.clarification_responses is None

    def test_existing_job_is_confirmed_not_redispatched(self, orchestrator, worker, ready_request):
        record = ready_request()
        orchestrator.reconcile(
            _report("pending_clarification", clarification_questions={"1": "?"}, external_job_id="job-5"),
            generation_id=record.id,
        )
        record = orchestrator.get(record.id)
        record = orchestrator.submit_clarification(record.id, {"subtitle": "要"}, record.version)

        confirmed = orchestrator.confirm(record.id, record.version)

        assert confirmed.status == GenerationStatus.QUEUED
        assert confirmed.external_job_id == "job-5"
        assert worker.count("dispatch") == 0
        assert worker.count("confirm") == 1
        assert worker.count("clarify") == 1

    def test_webhook_wins_race_with_dispatch(self, orchestrator, worker, ready_request):
        record = ready_request()

        def webhook_first(payload):
            orchestrator.reconcile(
                _report("processing", progress=5, external_job_id="job-1"),
                generation_id=payload["generationId"],
                external_job_id="job-1",
            )

        worker.before_dispatch_return = webhook_first

        result = orchestrator.confirm(record.id, record.version)

        assert result.status == GenerationStatus.PROCESSING
        assert result.external_job_id == "job-1"

    def test_cancel_during_dispatch(self, orchestrator, worker, store, ready_request):
        record = ready_request()

        def cancel_first(payload):
            claimed = store.get(payload["generationId"])
            orchestrator.cancel(claimed.id, claimed.version)

        worker.before_dispatch_return = cancel_first

        with pytest.raises(InvalidStateError):
            orchestrator.confirm(record.id, record.version)

        assert store.get(record.id).status == GenerationStatus.CANCELLED
        assert ("cancel", "job-1") in worker.calls


class TestCancel:
    def test_cancel_before_dispatch(self, orchestrator, worker, notifier, new_request):
        record = new_request()

        cancelled = orchestrator.cancel(record.id, record.version)

        assert cancelled.status == GenerationStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert worker.count("cancel") == 0
        assert notifier.posts[-1]["text"].startswith("⏹️")

    def test_cancel_is_local_when_worker_fails(self, orchestrator, worker, ready_request):
        record = ready_request()
        queued = orchestrator.confirm(record.id, record.version)
        worker.cancel_response = WorkerResponse.fail("HTTP 503: unavailable", 503)

        cancelled = orchestrator.cancel(queued.id, queued.version)

        assert cancelled.status == GenerationStatus.CANCELLED
        assert worker.count("cancel") == 1

    def test_cancel_terminal_rejected(self, orchestrator, new_request):
        record = new_request()
        cancelled = orchestrator.cancel(record.id, record.version)

        with pytest.raises(InvalidStateError):
            orchestrator.cancel(record.id, cancelled.version)

    def test_late_webhook_after_cancel_is_ignored(self, orchestrator, ready_request):
        record = ready_request()
        queued = orchestrator.confirm(record.id, record.version)
        cancelled = orchestrator.cancel(queued.id, queued.version)

        outcome = orchestrator.reconcile(
            _report("completed", result={"result_url": "https://x/y.mp4"}), external_job_id="job-1"
        )

        assert outcome.generation.status == GenerationStatus.CANCELLED
        assert outcome.generation.version == cancelled.version


class TestClarification:
    def test_empty_responses_rejected(self, orchestrator, new_request):
        record = new_request()

        with pytest.raises(ValidationError):
            orchestrator.submit_clarification(record.id, {}, record.version)

    def test_wrong_state_rejected(self, orchestrator, ready_request):
        record = ready_request()

        with pytest.raises(InvalidStateError):
            orchestrator.submit_clarification(record.id, {"a": "b"}, record.version)

    def test_worker_forward_failure_is_not_fatal(self, orchestrator, worker, new_request):
        record = new_request()
        orchestrator.reconcile(
            _report("pending_clarification", clarification_questions={"1": "?"}, external_job_id="job-3"),
            generation_id=record.id,
        )
        record = orchestrator.get(record.id)
        worker.clarify_response = WorkerResponse.fail("HTTP 500: boom", 500)

        updated = orchestrator.submit_clarification(record.id, {"1": "横屏"}, record.version)

        assert updated.status == GenerationStatus.PENDING_CONFIRMATION


class TestRefreshStatus:
    def test_poll_reconciles(self, orchestrator, worker, ready_request):
        record = ready_request()
        queued = orchestrator.confirm(record.id, record.version)
        worker.status_response = WorkerResponse.ok(JobStatus(status="running", progress=60))

        poll = orchestrator.refresh_status(queued.id)

        assert poll.error is None
        assert poll.generation.status == GenerationStatus.PROCESSING
        assert poll.generation.progress == 60

    def test_poll_active_job_moves_to_processing(self, orchestrator, worker, ready_request):
        record = ready_request()
        queued = orchestrator.confirm(record.id, record.version)
        worker.status_response = WorkerResponse.ok(JobStatus(status="active", progress=40))

        poll = orchestrator.refresh_status(queued.id)

        assert poll.error is None
        assert poll.generation.status == GenerationStatus.PROCESSING
        assert poll.generation.progress == 40

    def test_poll_worker_unavailable_returns_last_known(self, orchestrator, worker, ready_request):
        record = ready_request()
        queued = orchestrator.confirm(record.id, record.version)
        worker.status_response = WorkerResponse.fail("请求超时（30s）")

        poll = orchestrator.refresh_status(queued.id)

        assert poll.error == "请求超时（30s）"
        assert poll.generation.status == GenerationStatus.QUEUED

    def test_poll_without_job_skips_worker(self, orchestrator, worker, new_request):
        record = new_request()

        poll = orchestrator.refresh_status(record.id)

        assert poll.generation.id == record.id
        assert worker.count("query_status") == 0

    def test_unknown_worker_status(self, orchestrator, worker, ready_request):
        record = ready_request()
        queued = orchestrator.confirm(record.id, record.version)
        worker.status_response = WorkerResponse.ok(JobStatus(status="exploded"))

        poll = orchestrator.refresh_status(queued.id)

        assert poll.error
        assert poll.generation.status == GenerationStatus.QUEUED


def test_normalize_status_aliases():
    assert normalize_status("running") == GenerationStatus.PROCESSING
    assert normalize_status("Succeeded") == GenerationStatus.COMPLETED
    assert normalize_status("canceled") == GenerationStatus.CANCELLED
    assert normalize_status("queued") == GenerationStatus.QUEUED
    assert normalize_status("active") == GenerationStatus.PROCESSING
    assert normalize_status("retrying") == GenerationStatus.PROCESSING
    with pytest.raises(ValidationError):
        normalize_status("exploded")
