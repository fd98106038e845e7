"""
外部生成 Worker 客户端

所有方法都返回 WorkerResponse，不向调用方抛出网络异常。
超时与重试只在这里处理，编排层不关心重试。
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

import requests

from genflow import __version__
from genflow.core import get_settings, get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class WorkerResponse(Generic[T]):
    """Worker 调用结果: 成功时带 data，失败时带 error"""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, data: T, status_code: Optional[int] = None) -> "WorkerResponse[T]":
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(cls, error: str, status_code: Optional[int] = None) -> "WorkerResponse[T]":
        return cls(success=False, error=error, status_code=status_code)


@dataclass
class DispatchResult:
    """派发结果"""
    external_job_id: str
    queue_position: Optional[int] = None
    clarification_required: bool = False
    clarification_questions: Optional[dict[str, Any]] = None


@dataclass
class ClarificationAck:
    accepted: bool


@dataclass
class ConfirmResult:
    operation_id: Optional[str] = None


@dataclass
class JobStatus:
    """Worker 上报的任务状态（尚未归一化）"""
    status: str
    progress: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


def normalize_questions(questions: Any) -> Optional[dict[str, Any]]:
    """worker 可能返回问题列表，统一转换为 {序号: 问题} 的字典"""
    if questions is None:
        return None
    if isinstance(questions, dict):
        return questions
    if isinstance(questions, list):
        return {str(idx): question for idx, question in enumerate(questions, start=1)}
    return {"1": str(questions)}


class WorkerClient:
    """
    Worker HTTP 客户端

    每次请求受 timeout 约束；网络错误和 5xx 按指数退避重试，4xx 不重试。
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self._sleep = sleep
        self.headers = {
            "Content-Type": "application/json",
            "User-Agent": f"genflow/{__version__}",
        }
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    # ============ 协议方法 ============

    def dispatch(self, payload: dict[str, Any]) -> WorkerResponse[DispatchResult]:
        """
        派发生成任务

        Args:
            payload: GenerationRequest.to_payload() 的结果

        Returns:
            成功时 data 为 DispatchResult
        """
        headers = {}
        if payload.get("generationId"):
            # worker 按生成ID去重，重试不会重复建任务
            headers["Idempotency-Key"] = payload["generationId"]

        response = self._request("POST", "/api/generations", json=payload, headers=headers)
        if not response.success:
            return WorkerResponse.fail(response.error, response.status_code)

        data = response.data or {}
        external_job_id = data.get("jobId") or data.get("generationId")
        if not external_job_id:
            return WorkerResponse.fail("Worker 未返回任务ID", response.status_code)

        return WorkerResponse.ok(
            DispatchResult(
                external_job_id=str(external_job_id),
                queue_position=data.get("queuePosition"),
                clarification_required=bool(data.get("clarificationRequired")),
                clarification_questions=normalize_questions(data.get("clarificationQuestions")),
            ),
            response.status_code,
        )

    def submit_clarification(
        self,
        external_job_id: str,
        responses: dict[str, Any],
        questions: Optional[dict[str, Any]] = None,
    ) -> WorkerResponse[ClarificationAck]:
        """提交澄清回答"""
        body: dict[str, Any] = {"clarificationResponses": responses}
        if questions:
            body["clarificationQuestions"] = questions

        response = self._request(
            "POST", f"/api/generations/{external_job_id}/clarify", json=body
        )
        if not response.success:
            return WorkerResponse.fail(response.error, response.status_code)
        data = response.data or {}
        return WorkerResponse.ok(
            ClarificationAck(accepted=bool(data.get("accepted", data.get("success", True)))),
            response.status_code,
        )

    def confirm(self, external_job_id: str) -> WorkerResponse[ConfirmResult]:
        """确认已创建的任务，开始排队"""
        response = self._request("POST", f"/api/generations/{external_job_id}/confirm")
        if not response.success:
            return WorkerResponse.fail(response.error, response.status_code)
        data = response.data or {}
        return WorkerResponse.ok(
            ConfirmResult(operation_id=data.get("operationId")),
            response.status_code,
        )

    def query_status(self, external_job_id: str) -> WorkerResponse[JobStatus]:
        """查询任务状态"""
        response = self._request("GET", f"/api/queue/jobs/{external_job_id}")
        if not response.success:
            return WorkerResponse.fail(response.error, response.status_code)

        data = response.data or {}
        job = data.get("job") or data.get("generation") or data
        status = job.get("status")
        if not status:
            return WorkerResponse.fail("Worker 未返回任务状态", response.status_code)

        progress = job.get("progress")
        return WorkerResponse.ok(
            JobStatus(
                status=str(status),
                progress=int(progress) if isinstance(progress, (int, float)) else None,
                result=job.get("result"),
                error=job.get("error"),
                raw=job,
            ),
            response.status_code,
        )

    def cancel(self, external_job_id: str) -> WorkerResponse[dict]:
        """尽力通知 worker 取消任务"""
        return self._request("POST", f"/api/generations/{external_job_id}/cancel")

    def health_check(self) -> WorkerResponse[dict]:
        return self._request("GET", "/health")

    # ============ 传输层 ============

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> WorkerResponse[dict]:
        """发送请求，失败时按指数退避重试"""
        url = f"{self.base_url}{path}"
        merged_headers = {**self.headers, **(headers or {})}
        last_error = "Worker 调用失败"
        last_status: Optional[int] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                response = self.session.request(
                    method,
                    url,
                    json=json,
                    headers=merged_headers,
                    timeout=self.timeout,
                )
            except requests.Timeout:
                last_error = f"请求超时（{self.timeout}s）"
                last_status = None
            except requests.RequestException as e:
                last_error = f"请求失败: {e}"
                last_status = None
            else:
                try:
                    data = response.json()
                except ValueError:
                    data = {}
                if not isinstance(data, dict):
                    data = {"value": data}

                if response.ok:
                    return WorkerResponse.ok(data, response.status_code)

                last_status = response.status_code
                last_error = f"HTTP {response.status_code}: {data.get('error') or response.reason}"
                if 400 <= response.status_code < 500:
                    logger.warning(f"Worker 拒绝请求 {method} {path}: {last_error}")
                    return WorkerResponse.fail(last_error, last_status)

            if attempt < self.retry_attempts:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Worker 调用第 {attempt} 次失败 {method} {path}: {last_error}，{delay:.1f}s 后重试"
                )
                self._sleep(delay)

        logger.error(f"Worker 调用最终失败 {method} {path}: {last_error}")
        return WorkerResponse.fail(last_error, last_status)


# 全局单例
_worker_client: Optional[WorkerClient] = None


def get_worker_client() -> WorkerClient:
    """获取 Worker 客户端单例"""
    global _worker_client
    if _worker_client is None:
        settings = get_settings()
        _worker_client = WorkerClient(
            base_url=settings.worker_base_url,
            api_key=settings.worker_api_key,
            timeout=settings.worker_timeout,
            retry_attempts=settings.worker_retry_attempts,
            retry_delay=settings.worker_retry_delay,
        )
    return _worker_client
