"""Interfaces of the collaborators the gateway consumes but does not own."""

from collections.abc import Sequence
from typing import Protocol

from .schemas import HistoryMessage, RepositoryReference


class SecretStore(Protocol):
    def get_secret(self, ref: str) -> str:
        """Return the plaintext secret for ``ref``."""
        ...


class RetrievalClient(Protocol):
    def hybrid_search(self, query: str) -> Sequence[RepositoryReference]:
        """Return repositories relevant to ``query``, best match first."""
        ...


class HistoryStore(Protocol):
    def get_history(self, conversation_id: str) -> Sequence[HistoryMessage]: ...

    def append(self, conversation_id: str, message: HistoryMessage) -> None: ...


class NullRetrievalClient:
    def hybrid_search(self, query: str) -> Sequence[RepositoryReference]:
        return []
