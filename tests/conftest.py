"""
测试配置
"""
import os
import sys
import threading

import pytest

# 添加 src 目录到 Python 路径
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# 设置测试环境变量（必须在导入 genflow 之前）
os.environ["DATABASE_URL"] = "sqlite:///./data/test_genflow.db"
os.environ["WORKER_BASE_URL"] = "http://worker.test"
os.environ["WEBHOOK_SECRET"] = ""

from genflow.core.database import build_engine, init_db
from genflow.services.generation_store import GenerationStore
from genflow.services.notification_service import ConversationNotifier
from genflow.services.orchestrator import GenerationOrchestrator
from genflow.services.worker_client import (
    ClarificationAck,
    ConfirmResult,
    DispatchResult,
    JobStatus,
    WorkerResponse,
)


class FakeWorkerClient:
    """记录调用的 worker 替身，返回值可按测试需要修改"""

    def __init__(self):
        self.lock = threading.Lock()
        self.calls: list[tuple] = []
        self.dispatch_response = WorkerResponse.ok(DispatchResult(external_job_id="job-1"))
        self.confirm_response = WorkerResponse.ok(ConfirmResult(operation_id="op-1"))
        self.clarify_response = WorkerResponse.ok(ClarificationAck(accepted=True))
        self.status_response = WorkerResponse.ok(JobStatus(status="processing", progress=10))
        self.cancel_response = WorkerResponse.ok({"success": True})
        self.before_dispatch_return = None

    def _record(self, *call):
        with self.lock:
            self.calls.append(call)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def dispatch(self, payload):
        self._record("dispatch", payload)
        if self.before_dispatch_return:
            self.before_dispatch_return(payload)
        return self.dispatch_response

    def submit_clarification(self, external_job_id, responses, questions=None):
        self._record("clarify", external_job_id, responses)
        return self.clarify_response

    def confirm(self, external_job_id):
        self._record("confirm", external_job_id)
        return self.confirm_response

    def query_status(self, external_job_id):
        self._record("query_status", external_job_id)
        return self.status_response

    def cancel(self, external_job_id):
        self._record("cancel", external_job_id)
        return self.cancel_response


class RecordingNotifier:
    """只记录通知内容"""

    def __init__(self):
        self.posts: list[dict] = []

    def post(self, conversation_id, text, kind, metadata):
        self.posts.append(
            {"conversation_id": conversation_id, "text": text, "kind": kind, "metadata": metadata}
        )

    def kinds(self) -> list[str]:
        return [post["kind"].value for post in self.posts]


class FailingNotifier:
    def post(self, conversation_id, text, kind, metadata):
        raise RuntimeError("会话服务不可用")


@pytest.fixture
def test_engine(tmp_path):
    """每个测试独立的 SQLite 文件库"""
    engine = build_engine(f"sqlite:///{tmp_path / 'genflow.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(test_engine):
    return GenerationStore(test_engine)


@pytest.fixture
def worker():
    return FakeWorkerClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(store, worker, notifier):
    return GenerationOrchestrator(store=store, worker_client=worker, notifier=notifier)


@pytest.fixture
def conversation_notifier(test_engine):
    return ConversationNotifier(test_engine)


@pytest.fixture
def new_request(orchestrator):
    """创建一条 pending_clarification 记录"""

    def _create(owner_id: str = "user-1", conversation_id: str = "conv-1", **overrides):
        params = {
            "owner_id": owner_id,
            "conversation_id": conversation_id,
            "source_message_id": "msg-1",
            "media_type": "video",
            "provider": "veo3",
            "model": "veo3-v1.0",
            "prompt": "雨中漂流的纸船",
        }
        params.update(overrides)
        return orchestrator.create_request(**params)

    return _create


@pytest.fixture
def ready_request(orchestrator, new_request):
    """已完成澄清、等待确认的记录"""

    def _create(**overrides):
        record = new_request(**overrides)
        return orchestrator.submit_clarification(record.id, {"duration": "10s"}, record.version)

    return _create
