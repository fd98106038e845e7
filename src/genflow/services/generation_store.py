"""
生成记录存储 - 基于版本号的条件写入
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from genflow.core import get_logger
from genflow.core.exceptions import InternalError
from genflow.models import GenerationRequest, GenerationStatus

logger = get_logger(__name__)

# 创建后不可变的字段
IMMUTABLE_FIELDS = frozenset({
    "id",
    "owner_id",
    "conversation_id",
    "source_message_id",
    "media_type",
    "provider",
    "model",
    "prompt",
    "parameters",
    "created_at",
})
# 由存储层维护，mutator 的修改会被忽略
MANAGED_FIELDS = frozenset({"version", "updated_at"})

Mutator = Callable[[GenerationRequest], None]


class UpdateOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass
class UpdateResult:
    """条件写入结果"""
    outcome: UpdateOutcome
    record: Optional[GenerationRequest]
    changed_fields: tuple[str, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (UpdateOutcome.UPDATED, UpdateOutcome.UNCHANGED)


class GenerationStore:
    """
    生成记录存储

    不缓存任何记录，每次操作都重新读库；所有修改都走 update_if。
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def create(self, record: GenerationRequest) -> GenerationRequest:
        """保存新记录"""
        try:
            with Session(self.engine) as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                return record
        except SQLAlchemyError as e:
            logger.error(f"保存生成记录失败: {e}", exc_info=True)
            raise InternalError("保存生成记录失败") from e

    def get(self, generation_id: str) -> Optional[GenerationRequest]:
        """按内部ID获取记录"""
        try:
            with Session(self.engine) as session:
                return session.get(GenerationRequest, generation_id)
        except SQLAlchemyError as e:
            raise InternalError("读取生成记录失败", generation_id=generation_id) from e

    def get_by_external_job_id(self, external_job_id: str) -> Optional[GenerationRequest]:
        """按外部任务ID获取记录"""
        try:
            with Session(self.engine) as session:
                statement = select(GenerationRequest).where(
                    GenerationRequest.external_job_id == external_job_id
                )
                return session.exec(statement).first()
        except SQLAlchemyError as e:
            raise InternalError("读取生成记录失败") from e

    def list_by_owner(
        self,
        owner_id: str,
        conversation_id: Optional[str] = None,
        statuses: Optional[Iterable[GenerationStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[GenerationRequest]:
        """查询某用户的记录，按创建时间倒序"""
        statement = select(GenerationRequest).where(GenerationRequest.owner_id == owner_id)
        if conversation_id:
            statement = statement.where(GenerationRequest.conversation_id == conversation_id)
        if statuses is not None:
            statement = statement.where(GenerationRequest.status.in_(list(statuses)))
        statement = statement.order_by(GenerationRequest.created_at.desc())
        if limit:
            statement = statement.limit(limit)

        try:
            with Session(self.engine) as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            raise InternalError("查询生成记录失败") from e

    def update_if(
        self,
        generation_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> UpdateResult:
        """
        条件写入

        mutator 在记录副本上修改字段；只有当库中版本仍为 expected_version 时
        才落库，并把版本号加一。副本与原记录没有差异时不写库、不升版本。

        Returns:
            UpdateResult，CONFLICT 时 record 为库中最新记录
        """
        try:
            with Session(self.engine) as session:
                current = session.get(GenerationRequest, generation_id)
                if current is None:
                    return UpdateResult(UpdateOutcome.NOT_FOUND, None)
                if current.version != expected_version:
                    return UpdateResult(UpdateOutcome.CONFLICT, current)

                before = current.model_dump()
                draft = GenerationRequest(**copy.deepcopy(before))
                mutator(draft)
                after = draft.model_dump()

                changes = {
                    key: value
                    for key, value in after.items()
                    if key not in MANAGED_FIELDS and before.get(key) != value
                }
                if not changes:
                    return UpdateResult(UpdateOutcome.UNCHANGED, current)

                illegal = IMMUTABLE_FIELDS.intersection(changes)
                if before.get("external_job_id") is not None and "external_job_id" in changes:
                    illegal = illegal | {"external_job_id"}
                if illegal:
                    raise ValueError(f"字段不可修改: {sorted(illegal)}")

                now = datetime.now()
                statement = (
                    update(GenerationRequest)
                    .where(GenerationRequest.id == generation_id)
                    .where(GenerationRequest.version == expected_version)
                    .values(**changes, version=expected_version + 1, updated_at=now)
                )
                result = session.connection().execute(statement)
                if result.rowcount != 1:
                    session.rollback()
                    latest = session.get(GenerationRequest, generation_id, populate_existing=True)
                    return UpdateResult(UpdateOutcome.CONFLICT, latest)
                session.commit()

                draft.version = expected_version + 1
                draft.updated_at = now
                return UpdateResult(UpdateOutcome.UPDATED, draft, tuple(sorted(changes)))
        except SQLAlchemyError as e:
            logger.error(f"更新生成记录失败: {generation_id}, {e}", exc_info=True)
            raise InternalError("更新生成记录失败", generation_id=generation_id) from e
