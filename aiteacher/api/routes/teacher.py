"""
Chat and learner endpoints under /api/teacher.
"""

import uuid
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aiteacher.api.dependencies import get_teacher
from aiteacher.memory.models import ChatMessage, LearningAnalytics, UnderstandingAnalysis
from aiteacher.shared.exceptions import InteractionNotFoundError, MemoryStoreError
from aiteacher.shared.logging import get_logger
from aiteacher.teacher.orchestrator import AITeacher, TeachingRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/api/teacher", tags=["teacher"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(CamelModel):
    user_id: str = Field(min_length=1)
    session_id: Optional[str] = None
    message: str = Field(min_length=1)
    previous_messages: List[ChatMessage] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)

    def to_teaching_request(self) -> TeachingRequest:
        concepts = self.context.get("concepts") or []
        objectives = self.context.get("objectives") or []
        return TeachingRequest(
            user_id=self.user_id,
            session_id=self.session_id or uuid.uuid4().hex,
            message=self.message,
            previous_messages=self.previous_messages,
            concepts=[str(c) for c in concepts] if isinstance(concepts, list) else [],
            objectives=[str(o) for o in objectives] if isinstance(objectives, list) else [],
            extra=self.context,
        )


class ChatResponse(CamelModel):
    message: ChatMessage
    detected_concepts: List[str]
    suggested_followups: List[str]
    interaction_id: Optional[str] = None


class AnalyzeRequest(CamelModel):
    user_id: str
    message: str
    concepts: List[str] = Field(default_factory=list)


class FeedbackRequest(CamelModel):
    user_id: str
    interaction_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class FeedbackResponse(CamelModel):
    interaction_id: str
    effectiveness: Optional[float]


class LearningStyleUpdate(CamelModel):
    preferred_format: Optional[Literal["text", "code", "diagram", "analogy", "interactive"]] = None
    technical_level: Optional[int] = Field(default=None, ge=1, le=5)
    comprehension_speed: Optional[int] = Field(default=None, ge=1, le=5)
    visual_learner: Optional[bool] = None
    preferred_examples: Optional[List[str]] = None


def _sse_event(event_id: int, chunk: str) -> str:
    data = "\n".join(f"data: {line}" for line in chunk.split("\n"))
    return f"id: {event_id}\n{data}\n\n"


@router.post("/chat", response_model=ChatResponse, response_model_by_alias=True)
async def chat(body: ChatRequest, teacher: AITeacher = Depends(get_teacher)):
    result = await teacher.process_interaction(body.to_teaching_request())
    return ChatResponse(
        message=ChatMessage(role="assistant", content=result.content),
        detected_concepts=result.concepts,
        suggested_followups=result.followup_questions,
        interaction_id=result.interaction_id,
    )


@router.post("/chat/stream")
async def chat_stream(body: ChatRequest, teacher: AITeacher = Depends(get_teacher)):
    """
    Stream the reply as server-sent events.

    Each chunk is one event with an increasing `id`; the last event carries
    `METADATA:{...}`.
    """
    request = body.to_teaching_request()

    async def event_generator() -> AsyncIterator[str]:
        event_id = 0
        stream = teacher.stream_interaction(request)
        try:
            async for chunk in stream:
                event_id += 1
                yield _sse_event(event_id, chunk)
        finally:
            await stream.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/analyze", response_model=UnderstandingAnalysis)
async def analyze(body: AnalyzeRequest, teacher: AITeacher = Depends(get_teacher)):
    return await teacher.analyze_understanding(body.user_id, body.message, body.concepts or None)


@router.post("/feedback", response_model=FeedbackResponse, response_model_by_alias=True)
async def feedback(body: FeedbackRequest, teacher: AITeacher = Depends(get_teacher)):
    try:
        interaction = await teacher.record_feedback(
            body.user_id, body.interaction_id, body.rating, body.comment,
        )
    except InteractionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MemoryStoreError as e:
        logger.error("Feedback could not be stored: %s", e)
        raise HTTPException(status_code=503, detail="Learner memory is unavailable")
    return FeedbackResponse(interaction_id=interaction.id, effectiveness=interaction.effectiveness)


@router.get("/analytics/{user_id}", response_model=LearningAnalytics)
async def analytics(user_id: str, teacher: AITeacher = Depends(get_teacher)):
    return await teacher.get_learning_analytics(user_id)


@router.put("/learning-style/{user_id}")
async def update_learning_style(
    user_id: str,
    body: LearningStyleUpdate,
    teacher: AITeacher = Depends(get_teacher),
):
    changes = body.model_dump(exclude_none=True)
    try:
        style = await teacher.update_learning_style(user_id, **changes)
    except MemoryStoreError as e:
        logger.error("Learning style could not be stored: %s", e)
        raise HTTPException(status_code=503, detail="Learner memory is unavailable")
    return style.model_dump()


@router.get("/strategies")
async def strategies(teacher: AITeacher = Depends(get_teacher)):
    return teacher.get_teaching_strategies()
