"""Chat-completion interface used by AI response steps."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

# {"role": "system" | "user" | "assistant", "content": "..."}
ChatMessage = dict[str, str]


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: dict = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens") or 0)


class LLMProvider(ABC):
    name = "llm"

    @abstractmethod
    async def generate(
        self,
        messages: list[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Return the assistant reply to ``messages``. Raises on transport or API errors."""
