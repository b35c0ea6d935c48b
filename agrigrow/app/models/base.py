from abc import ABC, abstractmethod
from typing import Any, Dict, List


class ChatModelInterface(ABC):
    """A conversational model. ``history`` holds turns shaped
    ``{"role": "user" | "model", "parts": [{"text": ...}]}``.

    ``generate`` returns ``{"text": ...}`` on success, or a dict with an
    ``"error"`` key (plus optional ``"details"`` and ``"step"``)."""

    @abstractmethod
    async def generate(self, history: List[Dict[str, Any]], message: str) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        pass
