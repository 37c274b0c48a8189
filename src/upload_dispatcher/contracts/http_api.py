"""
HTTP API контракты (Pydantic-модели).

Назначение:
- валидация входа/выхода на уровне FastAPI
- стабильные структуры для клиентов (поля в camelCase)
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from upload_dispatcher.domain.task import DispatcherStatus, Task


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# ЗАПРОСЫ
# =============================================================================
class TaskCreateRequest(_ApiModel):
    filename: str = ""
    description: str = ""
    parents: list[str] = Field(default_factory=list)
    mime_type: str = Field(default="", alias="mimeType")


# =============================================================================
# ОТВЕТЫ
# =============================================================================
class TaskResponse(_ApiModel):
    id: str
    filename: str
    description: str = ""
    parents: list[str] = Field(default_factory=list)
    mime_type: str = Field(default="", alias="mimeType")
    create_time: int = Field(alias="createTime")
    created_at: str = Field(alias="createdAt")
    attempts: int = 0
    last_error: str | None = Field(default=None, alias="lastError")
    not_before: float | None = Field(default=None, alias="notBefore")

    @classmethod
    def from_task(cls, t: Task) -> TaskResponse:
        return cls(
            id=t.id,
            filename=t.filename,
            description=t.description,
            parents=list(t.parents),
            mime_type=t.mime_type,
            create_time=t.create_time,
            created_at=t.created_at().isoformat(),
            attempts=t.attempts,
            last_error=t.last_error,
            not_before=t.not_before,
        )


class TaskListResponse(_ApiModel):
    tasks: list[TaskResponse]


class DeadLetterResponse(TaskResponse):
    dead_reason: str | None = Field(default=None, alias="deadReason")
    dead_at: float | None = Field(default=None, alias="deadAt")

    @classmethod
    def from_task(cls, t: Task) -> DeadLetterResponse:
        base = TaskResponse.from_task(t).model_dump()
        return cls(**base, dead_reason=t.dead_reason, dead_at=t.dead_at)


class DeadLetterListResponse(_ApiModel):
    dead_letters: list[DeadLetterResponse] = Field(alias="deadLetters")


class ProgressResponse(_ApiModel):
    percent: float
    bytes_sent: int = Field(alias="bytesSent")
    total_bytes: int = Field(alias="totalBytes")


class CurrentTaskResponse(_ApiModel):
    id: str
    filename: str


class StatusResponse(_ApiModel):
    paused: bool
    progress: ProgressResponse | None = None
    task: CurrentTaskResponse | None = None

    @classmethod
    def from_status(cls, st: DispatcherStatus) -> StatusResponse:
        cur = st.current
        if cur is None:
            return cls(paused=st.paused)
        return cls(
            paused=st.paused,
            progress=ProgressResponse(
                percent=cur.percent,
                bytes_sent=cur.bytes_sent,
                total_bytes=cur.total_bytes,
            ),
            task=CurrentTaskResponse(id=cur.task_id, filename=cur.filename),
        )
