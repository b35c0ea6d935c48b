from .base import ChatModelInterface
from typing import Any, Dict, List, Optional
from loguru import logger


class LocalChatModel(ChatModelInterface):
    """Offline stand-in used when no AI endpoint is configured."""

    def __init__(self, model_path: Optional[str] = None, **kwargs):
        logger.info(
            f"Initializing LocalChatModel (stub). Path: {model_path}, Config: {list(kwargs.keys())}"
        )

    async def generate(self, history: List[Dict[str, Any]], message: str) -> Dict[str, Any]:
        logger.debug(f"LocalChatModel generating for: {message[:30]}...")
        return {
            "text": (
                "AgriGrow AI is running in offline mode. "
                f"You asked: \"{message.strip()}\". "
                "Please consult your local Krishi Vigyan Kendra (KVK) for detailed advice."
            ),
            "model_type": "local_stub",
            "turns": len(history),
        }
