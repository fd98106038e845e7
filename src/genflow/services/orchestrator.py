"""
生成生命周期编排 - 状态机、派发与状态对账

状态只沿 STATUS_RANK 单调前进；终态不再变化。同一记录上的并发修改
只依靠 GenerationStore.update_if 的版本号条件写入串行化，不持有任何锁。
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from genflow.core import get_logger
from genflow.core.exceptions import (
    InternalError,
    InvalidStateError,
    NotFoundError,
    ReconcileConflictError,
    UpstreamUnavailableError,
    ValidationError,
    VersionConflictError,
)
from genflow.models import (
    CLARIFICATION_STATUSES,
    TERMINAL_STATUSES,
    GenerationRequest,
    GenerationResult,
    GenerationStatus,
    MediaType,
    Provider,
    rank_of,
)
from genflow.services.generation_store import GenerationStore, UpdateOutcome
from genflow.services.notification_service import (
    NotificationSink,
    build_metadata,
    render_status_message,
)
from genflow.services.worker_client import JobStatus, WorkerClient

logger = get_logger(__name__)

MAX_PROMPT_LENGTH = 2000
MAX_MODEL_LENGTH = 100
DEFAULT_CLAIM_TIMEOUT = 300.0

# worker 侧状态别名
STATUS_ALIASES = {
    "pending": GenerationStatus.QUEUED,
    "running": GenerationStatus.PROCESSING,
    "in_progress": GenerationStatus.PROCESSING,
    "active": GenerationStatus.PROCESSING,
    # worker 队列在失败后自动重试，任务仍在进行中
    "retrying": GenerationStatus.PROCESSING,
    "succeeded": GenerationStatus.COMPLETED,
    "success": GenerationStatus.COMPLETED,
    "error": GenerationStatus.FAILED,
    "canceled": GenerationStatus.CANCELLED,
}


def normalize_status(raw: str) -> GenerationStatus:
    """把 worker 上报的状态转换为生命周期状态"""
    value = (raw or "").strip().lower()
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value]
    try:
        return GenerationStatus(value)
    except ValueError:
        raise ValidationError(f"未知的生成状态: {raw}") from None


def normalize_result(raw: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """校验 worker 返回的结果字段"""
    if raw is None:
        return None
    try:
        return GenerationResult.model_validate(raw).to_record()
    except PydanticValidationError as e:
        raise ValidationError(f"生成结果格式错误: {e.errors()[0]['msg']}") from e


@dataclass
class StatusReport:
    """一次状态上报（webhook 推送或轮询拉取）"""
    status: GenerationStatus
    progress: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    clarification_questions: Optional[dict[str, Any]] = None
    external_job_id: Optional[str] = None


@dataclass
class ReconcileResult:
    generation: GenerationRequest
    changed: bool = False
    status_changed: bool = False


@dataclass
class PollResult:
    generation: GenerationRequest
    error: Optional[str] = None


class GenerationOrchestrator:
    """
    生成编排服务

    依赖三个协作者：记录存储、worker 客户端、会话通知。
    """

    def __init__(
        self,
        store: GenerationStore,
        worker_client: WorkerClient,
        notifier: NotificationSink,
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT,
    ):
        self.store = store
        self.worker_client = worker_client
        self.notifier = notifier
        # confirmed 占位超过这个时长仍没有外部任务ID，视为派发中断，允许重新确认
        self.claim_timeout = claim_timeout

    # ============ 创建与查询 ============

    def create_request(
        self,
        owner_id: str,
        conversation_id: str,
        source_message_id: str,
        media_type: MediaType | str,
        provider: Provider | str,
        model: str,
        prompt: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> GenerationRequest:
        """创建生成请求，初始状态为 pending_clarification"""
        if not owner_id or not conversation_id or not source_message_id:
            raise ValidationError("缺少用户、会话或消息ID")
        prompt = (prompt or "").strip()
        if not prompt or len(prompt) > MAX_PROMPT_LENGTH:
            raise ValidationError(f"提示词长度应在 1-{MAX_PROMPT_LENGTH} 之间")
        model = (model or "").strip()
        if not model or len(model) > MAX_MODEL_LENGTH:
            raise ValidationError(f"模型名称长度应在 1-{MAX_MODEL_LENGTH} 之间")
        try:
            media_type = MediaType(media_type)
            provider = Provider(provider)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        if parameters is not None and not isinstance(parameters, dict):
            raise ValidationError("生成参数必须是对象")

        record = self.store.create(
            GenerationRequest(
                owner_id=owner_id,
                conversation_id=conversation_id,
                source_message_id=source_message_id,
                media_type=media_type,
                provider=provider,
                model=model,
                prompt=prompt,
                parameters=parameters,
                status=GenerationStatus.PENDING_CLARIFICATION,
            )
        )
        logger.info(
            f"生成请求已创建: id={record.id}, type={media_type.value}, provider={provider.value}"
        )
        return record

    def get(self, generation_id: str, owner_id: Optional[str] = None) -> GenerationRequest:
        """获取记录；不属于该用户的记录按不存在处理"""
        record = self.store.get(generation_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise NotFoundError("生成记录不存在", generation_id=generation_id)
        return record

    def list_requests(
        self,
        owner_id: str,
        conversation_id: Optional[str] = None,
        statuses: Optional[Iterable[GenerationStatus]] = None,
    ) -> list[GenerationRequest]:
        return self.store.list_by_owner(owner_id, conversation_id=conversation_id, statuses=statuses)

    def list_active(self, owner_id: str) -> list[GenerationRequest]:
        """未进入终态的记录"""
        active = [status for status in GenerationStatus if status not in TERMINAL_STATUSES]
        return self.store.list_by_owner(owner_id, statuses=active)

    def list_pending_clarifications(self, owner_id: str) -> list[GenerationRequest]:
        return self.store.list_by_owner(
            owner_id, statuses=[GenerationStatus.PENDING_CLARIFICATION]
        )

    # ============ 用户操作 ============

    def submit_clarification(
        self,
        generation_id: str,
        responses: dict[str, Any],
        version: int,
        questions: Optional[dict[str, Any]] = None,
        owner_id: Optional[str] = None,
    ) -> GenerationRequest:
        """
        提交澄清回答，进入 pending_confirmation

        已有外部任务时（worker 曾追问）把回答同步给 worker，同步失败只记日志。
        """
        if not responses:
            raise ValidationError("澄清回答不能为空", generation_id=generation_id)

        record = self._get_versioned(generation_id, version, owner_id)
        if record.status != GenerationStatus.PENDING_CLARIFICATION:
            raise InvalidStateError(
                f"当前状态 {record.status.value} 不允许提交澄清", generation_id=generation_id
            )

        def mutate(draft: GenerationRequest) -> None:
            draft.clarification_responses = dict(responses)
            if questions is not None:
                draft.clarification_questions = dict(questions)
            draft.status = GenerationStatus.PENDING_CONFIRMATION

        updated = self._write(generation_id, version, mutate)
        self._log_transition(record, updated)

        if updated.external_job_id:
            response = self.worker_client.submit_clarification(
                updated.external_job_id, updated.clarification_responses, questions
            )
            if not response.success:
                logger.warning(f"澄清同步到 worker 失败: id={generation_id}, {response.error}")

        return updated

    def confirm(
        self,
        generation_id: str,
        version: int,
        owner_id: Optional[str] = None,
    ) -> GenerationRequest:
        """
        确认并派发

        先把记录条件写入 confirmed 占位，只有占位成功的调用方才会调用 worker。
        worker 失败时撤回占位，记录回到 pending_confirmation，错误抛给调用方。
        撤回本身失败（或进程在派发中退出）时记录停在 confirmed，超过
        claim_timeout 后持有当前版本号的调用方可以重新确认。
        """
        record = self._get_versioned(generation_id, version, owner_id)
        if record.status == GenerationStatus.CONFIRMED and not record.external_job_id:
            if not self._claim_expired(record):
                raise InvalidStateError("生成正在派发中，请稍后重试", generation_id=generation_id)
            logger.warning(f"确认占位已过期，重新派发: id={generation_id}, version={version}")
        elif record.status != GenerationStatus.PENDING_CONFIRMATION:
            raise InvalidStateError(
                f"当前状态 {record.status.value} 不允许确认", generation_id=generation_id
            )
        if not record.clarification_responses:
            raise ValidationError("确认前需要先完成澄清", generation_id=generation_id)

        def claim(draft: GenerationRequest) -> None:
            draft.status = GenerationStatus.CONFIRMED
            draft.dispatch_attempts += 1

        claimed = self._write(generation_id, version, claim)
        self._log_transition(record, claimed)

        dispatch = None
        if claimed.external_job_id:
            response = self.worker_client.confirm(claimed.external_job_id)
        else:
            response = self.worker_client.dispatch(claimed.to_payload())
            dispatch = response.data if response.success else None

        if not response.success:
            self._release_claim(claimed)
            raise UpstreamUnavailableError(
                f"派发到 worker 失败: {response.error}", generation_id=generation_id
            )

        job_id = dispatch.external_job_id if dispatch else claimed.external_job_id

        if dispatch and dispatch.clarification_required:
            # worker 认为信息不足，回到澄清阶段
            def mutate(draft: GenerationRequest) -> None:
                draft.external_job_id = job_id
                draft.status = GenerationStatus.PENDING_CLARIFICATION
                draft.clarification_questions = dispatch.clarification_questions
                draft.clarification_responses = None
        else:
            def mutate(draft: GenerationRequest) -> None:
                draft.external_job_id = job_id
                draft.status = GenerationStatus.QUEUED
                if dispatch and dispatch.queue_position is not None:
                    draft.queue_position = dispatch.queue_position

        updated = self._finish_claim(claimed, job_id, mutate)
        return updated

    def cancel(
        self,
        generation_id: str,
        version: int,
        owner_id: Optional[str] = None,
    ) -> GenerationRequest:
        """
        取消生成

        本地取消立即生效；对 worker 的取消请求只是尽力而为。
        """
        record = self._get_versioned(generation_id, version, owner_id)
        if record.is_terminal:
            raise InvalidStateError(
                f"当前状态 {record.status.value} 不允许取消", generation_id=generation_id
            )

        def mutate(draft: GenerationRequest) -> None:
            draft.status = GenerationStatus.CANCELLED
            draft.cancelled_at = datetime.now()

        updated = self._write(generation_id, version, mutate)
        self._log_transition(record, updated)

        if updated.external_job_id:
            self._cancel_remote(updated.external_job_id)
        self._notify(updated)
        return updated

    # ============ 状态对账 ============

    def reconcile(
        self,
        report: StatusReport,
        generation_id: Optional[str] = None,
        external_job_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        合并一次状态上报

        webhook 按外部任务ID定位（失败时回退到内部ID），轮询按内部ID定位。
        过期、重复、终态后的上报都是无副作用的空操作；条件写入竞争失败时
        重新读取并重试一次，仍失败则抛出 ReconcileConflictError。
        """
        if not generation_id and not external_job_id:
            raise ValidationError("缺少生成ID或外部任务ID")

        progress = self._sanitize_progress(report.progress, generation_id or external_job_id)

        for attempt in (1, 2):
            record = self._resolve(generation_id, external_job_id, owner_id)
            mutator = self._plan(record, report, progress)
            if mutator is None:
                return ReconcileResult(record)

            result = self.store.update_if(record.id, record.version, mutator)
            if result.outcome == UpdateOutcome.NOT_FOUND:
                raise NotFoundError("生成记录不存在", generation_id=record.id)
            if result.outcome == UpdateOutcome.UNCHANGED:
                logger.debug(f"重复上报，忽略: id={record.id}, status={report.status.value}")
                return ReconcileResult(result.record)
            if result.outcome == UpdateOutcome.UPDATED:
                updated = result.record
                status_changed = updated.status != record.status
                if status_changed:
                    self._log_transition(record, updated)
                    self._notify(updated)
                return ReconcileResult(updated, changed=True, status_changed=status_changed)

            logger.info(f"对账写入冲突，第 {attempt} 次: id={record.id}")

        raise ReconcileConflictError("对账写入冲突，请重试", generation_id=record.id)

    def refresh_status(self, generation_id: str, owner_id: Optional[str] = None) -> PollResult:
        """
        轮询 worker 状态并对账

        worker 不可用时返回本地最后已知记录和错误信息，不阻塞调用方。
        """
        record = self.get(generation_id, owner_id)
        if record.is_terminal or not record.external_job_id:
            return PollResult(record)

        response = self.worker_client.query_status(record.external_job_id)
        if not response.success:
            logger.warning(f"查询 worker 状态失败: id={generation_id}, {response.error}")
            return PollResult(record, error=response.error)

        try:
            report = self.report_from_job(response.data)
        except ValidationError as e:
            logger.warning(f"worker 状态无法识别: id={generation_id}, {e.message}")
            return PollResult(record, error=e.message)

        outcome = self.reconcile(report, generation_id=record.id)
        return PollResult(outcome.generation)

    @staticmethod
    def report_from_job(job: JobStatus) -> StatusReport:
        status = normalize_status(job.status)
        return StatusReport(
            status=status,
            progress=job.progress,
            result=normalize_result(job.result),
            error_message=job.error,
            clarification_questions=job.raw.get("clarificationQuestions"),
        )

    # ============ 内部方法 ============

    def _resolve(
        self,
        generation_id: Optional[str],
        external_job_id: Optional[str],
        owner_id: Optional[str] = None,
    ) -> GenerationRequest:
        record = None
        if external_job_id:
            record = self.store.get_by_external_job_id(external_job_id)
        if record is None and generation_id:
            record = self.store.get(generation_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise NotFoundError(
                f"生成记录不存在: job={external_job_id}", generation_id=generation_id
            )
        return record

    def _plan(
        self,
        record: GenerationRequest,
        report: StatusReport,
        progress: Optional[int],
    ) -> Optional[Callable[[GenerationRequest], None]]:
        """根据当前记录决定如何合并上报；返回 None 表示忽略"""
        if record.is_terminal:
            logger.debug(f"记录已是终态 {record.status.value}，忽略上报: id={record.id}")
            return None

        incoming_job_id = report.external_job_id
        if incoming_job_id and record.external_job_id and incoming_job_id != record.external_job_id:
            logger.warning(
                f"上报的任务ID与记录不一致，忽略: id={record.id}, "
                f"record_job={record.external_job_id}, incoming_job={incoming_job_id}"
            )
            return None
        job_id_to_set = incoming_job_id if record.external_job_id is None else None

        current = record.status
        incoming = report.status

        # worker 追问：在澄清阶段内替换问题，必要时回到 pending_clarification
        if incoming == GenerationStatus.PENDING_CLARIFICATION and current in CLARIFICATION_STATUSES:
            questions = report.clarification_questions

            def mutate_clarification(draft: GenerationRequest) -> None:
                if job_id_to_set:
                    draft.external_job_id = job_id_to_set
                if questions is not None:
                    draft.clarification_questions = dict(questions)
                if current == GenerationStatus.PENDING_CONFIRMATION:
                    draft.status = GenerationStatus.PENDING_CLARIFICATION
                    draft.clarification_responses = None

            return mutate_clarification

        incoming_rank = rank_of(incoming)
        current_rank = record.status_rank

        if incoming_rank < current_rank:
            logger.info(
                f"过期上报，忽略: id={record.id}, current={current.value}, incoming={incoming.value}"
            )
            return None

        if incoming_rank == current_rank:
            def mutate_same_rank(draft: GenerationRequest) -> None:
                if job_id_to_set:
                    draft.external_job_id = job_id_to_set
                # 进度只在 processing 阶段有意义
                if current != GenerationStatus.PROCESSING or progress is None:
                    return
                if progress > draft.progress:
                    draft.progress = progress

            return mutate_same_rank

        now = datetime.now()

        def mutate_advance(draft: GenerationRequest) -> None:
            if job_id_to_set:
                draft.external_job_id = job_id_to_set
            draft.status = incoming
            if incoming == GenerationStatus.PROCESSING:
                draft.progress = progress if progress is not None else 0
                draft.started_at = now
            elif incoming == GenerationStatus.COMPLETED:
                draft.progress = 100
                draft.result = report.result or {}
                draft.completed_at = now
            elif incoming == GenerationStatus.FAILED:
                draft.error_message = report.error_message or "未知错误"
                draft.failed_at = now
            elif incoming == GenerationStatus.CANCELLED:
                draft.cancelled_at = now

        return mutate_advance

    def _get_versioned(
        self,
        generation_id: str,
        version: int,
        owner_id: Optional[str] = None,
    ) -> GenerationRequest:
        """用户操作先校验版本号，过期的页面状态一律按并发冲突处理"""
        record = self.get(generation_id, owner_id)
        if record.version != version:
            raise VersionConflictError(
                f"记录已被修改（当前版本 {record.version}），请刷新后重试",
                generation_id=generation_id,
            )
        return record

    def _write(
        self,
        generation_id: str,
        version: int,
        mutator: Callable[[GenerationRequest], None],
    ) -> GenerationRequest:
        """用户操作的条件写入，版本不匹配时抛出 VersionConflictError"""
        result = self.store.update_if(generation_id, version, mutator)
        if result.outcome == UpdateOutcome.NOT_FOUND:
            raise NotFoundError("生成记录不存在", generation_id=generation_id)
        if result.outcome == UpdateOutcome.CONFLICT:
            raise VersionConflictError(
                f"记录已被修改（当前版本 {result.record.version}），请刷新后重试",
                generation_id=generation_id,
            )
        return result.record

    def _claim_expired(self, record: GenerationRequest) -> bool:
        return datetime.now() - record.updated_at >= timedelta(seconds=self.claim_timeout)

    def _release_claim(self, claimed: GenerationRequest) -> None:
        """派发失败，把 confirmed 占位撤回到 pending_confirmation"""
        try:
            result = self.store.update_if(
                claimed.id,
                claimed.version,
                lambda draft: setattr(draft, "status", GenerationStatus.PENDING_CONFIRMATION),
            )
        except InternalError:
            # 占位留在 confirmed，过期后可重新确认
            logger.error(f"撤回确认占位写库失败: id={claimed.id}", exc_info=True)
            return
        if result.outcome != UpdateOutcome.UPDATED:
            current = result.record.status.value if result.record else None
            logger.warning(f"撤回确认占位失败: id={claimed.id}, outcome={result.outcome.value}, status={current}")
            return
        logger.info(f"派发失败，记录回到 pending_confirmation: id={claimed.id}")

    def _finish_claim(
        self,
        claimed: GenerationRequest,
        job_id: Optional[str],
        mutator: Callable[[GenerationRequest], None],
    ) -> GenerationRequest:
        """派发成功后落库；期间记录被并发修改时按最新状态处理"""
        result = self.store.update_if(claimed.id, claimed.version, mutator)
        if result.outcome == UpdateOutcome.UPDATED:
            self._log_transition(claimed, result.record)
            self._notify(result.record)
            return result.record

        latest = result.record
        if latest is None:
            raise NotFoundError("生成记录不存在", generation_id=claimed.id)

        if latest.status == GenerationStatus.CANCELLED:
            # 派发期间用户取消了，通知 worker 放弃这个任务
            if job_id:
                self._cancel_remote(job_id)
            raise InvalidStateError("生成在派发期间已被取消", generation_id=claimed.id)

        if job_id and latest.external_job_id == job_id:
            # webhook 先一步把状态推进了
            logger.info(f"派发结果已由 webhook 写入: id={claimed.id}, status={latest.status.value}")
            return latest

        raise VersionConflictError("派发期间记录被并发修改", generation_id=claimed.id)

    def _cancel_remote(self, external_job_id: str) -> None:
        response = self.worker_client.cancel(external_job_id)
        if not response.success:
            logger.warning(f"通知 worker 取消失败: job={external_job_id}, {response.error}")

    def _sanitize_progress(self, progress: Any, ref: Optional[str]) -> Optional[int]:
        """进度必须是 0-100 的整数，否则丢弃该值"""
        if progress is None:
            return None
        if isinstance(progress, bool) or not isinstance(progress, (int, float)):
            logger.warning(f"进度值类型错误，已忽略: ref={ref}, progress={progress!r}")
            return None
        if progress < 0 or progress > 100:
            logger.warning(f"进度值超出范围，已忽略: ref={ref}, progress={progress}")
            return None
        return int(progress)

    def _notify(self, record: GenerationRequest) -> None:
        """发送状态通知；失败只记录日志，不影响已提交的状态"""
        text, kind = render_status_message(record)
        try:
            self.notifier.post(record.conversation_id, text, kind, build_metadata(record))
        except Exception:
            logger.error(f"状态通知发送失败: id={record.id}, status={record.status.value}", exc_info=True)

    @staticmethod
    def _log_transition(before: GenerationRequest, after: GenerationRequest) -> None:
        logger.info(
            f"状态变更: id={after.id}, {before.status.value} -> {after.status.value}, "
            f"version={after.version}"
        )


# 全局单例
_orchestrator: Optional[GenerationOrchestrator] = None


def get_orchestrator() -> GenerationOrchestrator:
    """获取编排服务单例"""
    global _orchestrator
    if _orchestrator is None:
        from genflow.core import get_settings
        from genflow.core.database import engine
        from genflow.services.notification_service import ConversationNotifier
        from genflow.services.worker_client import get_worker_client

        _orchestrator = GenerationOrchestrator(
            store=GenerationStore(engine),
            worker_client=get_worker_client(),
            notifier=ConversationNotifier(engine),
            claim_timeout=get_settings().dispatch_claim_timeout,
        )
    return _orchestrator
