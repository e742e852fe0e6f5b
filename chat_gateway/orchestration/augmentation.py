"""Assembly of the outbound prompt from history and retrieval results."""

from collections.abc import Sequence

from chat_gateway.constants import (
    DEFAULT_SYSTEM_PROMPT,
    HISTORY_WINDOW,
    REFERENCE_CLOSING_INSTRUCTION,
)
from chat_gateway.providers.base import PromptMessage
from chat_gateway.schemas import HistoryMessage, RepositoryReference


def render_system_prompt(
    references: Sequence[RepositoryReference], base_prompt: str | None = None
) -> str:
    prompt = base_prompt or DEFAULT_SYSTEM_PROMPT
    if not references:
        return prompt

    lines = [prompt, "", "Relevant repositories:"]
    for index, repo in enumerate(references, start=1):
        lines.extend(
            [
                f"{index}. {repo.repository_name} ({repo.owner})",
                f"   Description: {repo.description or 'n/a'}",
                f"   Stars: {repo.stars or 0}",
                f"   Language: {repo.language or 'unknown'}",
                f"   URL: {repo.url}",
            ]
        )
    lines.extend(["", REFERENCE_CLOSING_INSTRUCTION])
    return "\n".join(lines)


def build_prompt_messages(
    message: str,
    history: Sequence[HistoryMessage],
    references: Sequence[RepositoryReference],
    system_prompt: str | None = None,
    history_window: int = HISTORY_WINDOW,
) -> list[PromptMessage]:
    """System instruction, the last ``history_window`` turns oldest-first, then the new message.

    The window is taken over the stored turns before system turns are dropped.
    """
    recent = list(history)[-history_window:] if history_window > 0 else []
    messages = [PromptMessage(role="system", content=render_system_prompt(references, system_prompt))]
    messages.extend(
        PromptMessage(role=turn.role, content=turn.content)
        for turn in recent
        if turn.role != "system"
    )
    messages.append(PromptMessage(role="user", content=message))
    return messages
