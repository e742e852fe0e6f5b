"""In-process conversation history store."""

import threading
from collections.abc import Sequence

from chat_gateway.schemas import HistoryMessage


class InMemoryHistoryStore:
    """Append-only, process-lifetime history keyed by conversation id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, list[HistoryMessage]] = {}

    def get_history(self, conversation_id: str) -> Sequence[HistoryMessage]:
        with self._lock:
            return list(self._messages.get(conversation_id, ()))

    def append(self, conversation_id: str, message: HistoryMessage) -> None:
        with self._lock:
            self._messages.setdefault(conversation_id, []).append(message)
