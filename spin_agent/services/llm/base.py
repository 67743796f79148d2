from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from spin_agent.services.errors import InferenceError


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    fragments: list[str] = field(default_factory=list)


def join_fragments(parts: Iterable[Optional[str]]) -> str:
    """Concatenate response fragments in order, inserting nothing between them."""
    text = "".join(part for part in parts if part)
    if not text.strip():
        raise InferenceError("Inference returned empty content")
    return text


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(self, prompt: str) -> LLMResponse:
        """Complete a single rendered prompt. Raises InferenceError on failure or empty output."""
        pass
