"""
Async HTTP client for the AI Teacher API.

Streaming replies are server-sent events: `id: <n>` plus `data: <chunk>`
per event, then one `data: METADATA:{...}` event.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from aiteacher.health.monitor import HealthMonitor, HealthStatus, HealthTracker, http_probe
from aiteacher.llm.gateway import extract_chunk_content
from aiteacher.shared.logging import get_logger
from aiteacher.teacher.orchestrator import DEFAULT_FOLLOWUPS, METADATA_PREFIX

logger = get_logger(__name__)

CONTROL_EVENTS = {"connected", "complete", "[DONE]"}


@dataclass
class StreamEvent:
    id: Optional[str]
    data: str


def parse_sse_block(block: str) -> Optional[StreamEvent]:
    """Parse one blank-line separated SSE block; comment-only blocks yield None."""
    event_id = None
    data_lines = []
    for line in block.splitlines():
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "id":
            event_id = value
        elif name == "data":
            data_lines.append(value)
    if not data_lines:
        return None
    return StreamEvent(id=event_id, data="\n".join(data_lines))


@dataclass
class StreamAssembler:
    """Reassembles a streamed teaching reply from SSE text."""
    content: str = ""
    concepts: List[str] = field(default_factory=list)
    followup_questions: List[str] = field(default_factory=list)
    metadata_received: bool = False
    _seen_ids: Set[str] = field(default_factory=set)
    _buffer: str = ""

    def feed(self, text: str) -> List[str]:
        """Consume raw stream text; returns the content pieces it completed."""
        self._buffer += text.replace("\r\n", "\n")
        pieces = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            event = parse_sse_block(block)
            if event is None:
                continue
            piece = self.handle(event)
            if piece:
                pieces.append(piece)
        return pieces

    def handle(self, event: StreamEvent) -> str:
        if event.id is not None:
            if event.id in self._seen_ids:
                return ""
            self._seen_ids.add(event.id)

        data = event.data.strip()
        if not data or data in CONTROL_EVENTS or _is_control(data):
            return ""

        if data.startswith(METADATA_PREFIX):
            self._apply_metadata(data[len(METADATA_PREFIX):])
            return ""

        piece = extract_chunk_content(event.data)
        self.content += piece
        return piece

    def _apply_metadata(self, raw: str):
        try:
            metadata = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed stream metadata")
            return
        self.metadata_received = True
        self.concepts = list(metadata.get("concepts") or [])
        self.followup_questions = list(metadata.get("followupQuestions") or [])

    def finish(self) -> Dict[str, Any]:
        """Flush any unterminated event and return the assembled reply."""
        if self._buffer.strip():
            self.feed("\n\n")
        followups = self.followup_questions
        if not self.metadata_received:
            followups = list(DEFAULT_FOLLOWUPS)
        return {
            "content": self.content,
            "concepts": self.concepts,
            "followupQuestions": followups,
        }


def _is_control(data: str) -> bool:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return False
    return isinstance(payload, dict) and payload.get("type") in CONTROL_EVENTS


class TeacherClient:
    """Thin async wrapper over the chat endpoints."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        health_max_retries: int = 2,
        health_retry_delay: float = 1.5,
        health_interval: float = 30.0,
        tracker: Optional[HealthTracker] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        # Shared by every check; holds the last-success time
        self.tracker = tracker or HealthTracker()
        self.health = HealthMonitor(
            http_probe(base_url, timeout=min(timeout, 5.0), transport=transport),
            self.tracker,
            max_retries=health_max_retries,
            retry_delay=health_retry_delay,
            interval=health_interval,
        )

    async def __aenter__(self) -> "TeacherClient":
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self.health.stop()
        await self._client.aclose()

    @staticmethod
    def _payload(
        user_id: str,
        message: str,
        session_id: Optional[str],
        previous_messages: Optional[List[Dict[str, str]]],
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            "userId": user_id,
            "sessionId": session_id or f"{user_id}-session",
            "message": message,
            "previousMessages": previous_messages or [],
            "context": context or {},
        }

    async def chat(
        self,
        user_id: str,
        message: str,
        session_id: Optional[str] = None,
        previous_messages: Optional[List[Dict[str, str]]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._client.post(
            "/api/teacher/chat",
            json=self._payload(user_id, message, session_id, previous_messages, context),
            headers={"X-User-Id": user_id},
        )
        response.raise_for_status()
        return response.json()

    async def chat_stream(
        self,
        user_id: str,
        message: str,
        session_id: Optional[str] = None,
        previous_messages: Optional[List[Dict[str, str]]] = None,
        context: Optional[Dict[str, Any]] = None,
        on_content: Optional[Callable[[str], None]] = None,
    ) -> Dict[str, Any]:
        """Stream a reply, calling `on_content` per text piece; returns the assembled reply."""
        assembler = StreamAssembler()
        async with self._client.stream(
            "POST",
            "/api/teacher/chat/stream",
            json=self._payload(user_id, message, session_id, previous_messages, context),
            headers={"X-User-Id": user_id},
        ) as response:
            response.raise_for_status()
            async for text in response.aiter_text():
                for piece in assembler.feed(text):
                    if on_content:
                        on_content(piece)
        return assembler.finish()

    async def check_health(self) -> HealthStatus:
        """One full retry sequence against the service's /health endpoint."""
        return await self.health.check_health()

    def start_monitoring(self) -> Callable[[], None]:
        """Poll /health every `health_interval` seconds; returns a cancel callable."""
        return self.health.start_monitoring()
