from .base import ChatModelInterface
from typing import Any, Dict, List, Optional
import httpx
from loguru import logger


def extract_reply(data: Dict[str, Any]) -> Dict[str, Any]:
    """Pull the reply text out of a generateContent response, or describe
    why there is none."""
    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        return {
            "error": f"Prompt was blocked by safety settings ({block_reason})",
            "details": data.get("promptFeedback"),
            "step": "prompt_feedback",
        }

    candidates = data.get("candidates") or []
    if not candidates:
        return {"error": "No candidates in model response", "step": "candidates"}

    candidate = candidates[0]
    finish_reason = candidate.get("finishReason")
    if finish_reason in ("SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT"):
        return {
            "error": f"Response was blocked by safety settings ({finish_reason})",
            "details": candidate.get("safetyRatings"),
            "step": "finish_reason",
        }

    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
    return {"text": text, "finish_reason": finish_reason}


class GeminiChatModel(ChatModelInterface):
    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        model_name: str = "gemini-2.5-flash",
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
        **kwargs,
    ):
        self.base_endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

        if not self.api_key:
            logger.critical(
                "Gemini API Key not provided for GeminiChatModel. This is required."
            )
            raise ValueError("Gemini API Key is required for GeminiChatModel.")
        if not self.base_endpoint:
            logger.critical(
                "Gemini endpoint not configured for GeminiChatModel. This is required."
            )
            raise ValueError("Gemini endpoint is required for GeminiChatModel.")

        self.client = kwargs.get("client") or httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, read=120.0)
        )
        self.headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

        logger.info(
            f"GeminiChatModel Initialized. Endpoint: {self.base_endpoint}, Model: {self.model_name}, "
            f"API Key ending: ...{self.api_key[-4:] if len(self.api_key) >= 4 else 'KEY_INVALID_OR_SHORT'}"
        )

    def build_payload(self, history: List[Dict[str, Any]], message: str) -> Dict[str, Any]:
        return {
            "contents": list(history)
            + [{"role": "user", "parts": [{"text": message}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    async def generate(self, history: List[Dict[str, Any]], message: str) -> Dict[str, Any]:
        method_name = "GeminiChatModel.generate"
        url = f"{self.base_endpoint}/models/{self.model_name}:generateContent"
        payload = self.build_payload(history, message)

        logger.debug(
            f"{method_name}: Sending {len(payload['contents'])} turns to {self.model_name}. "
            f"Message (first 50 chars): '{message[:50]}...'"
        )
        logger.trace(f"{method_name}: generateContent payload: {payload}")

        try:
            response = await self.client.post(url, headers=self.headers, json=payload)
            if response.status_code >= 300:
                logger.warning(
                    f"{method_name}: generateContent returned {response.status_code}. "
                    f"Response body: {response.text[:500]}"
                )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            return {
                "error": f"Gemini request failed with status {e.response.status_code}",
                "details": e.response.text[:500],
                "step": "http_status",
            }
        except httpx.HTTPError as e:
            logger.error(
                f"{method_name}: Transport error calling Gemini: {type(e).__name__} - {e}",
                exc_info=True,
            )
            return {"error": f"Gemini transport error: {type(e).__name__}", "step": "transport"}
        except ValueError as e:
            return {"error": f"Gemini returned invalid JSON: {e}", "step": "decode"}

        result = extract_reply(data)
        if "error" in result:
            logger.warning(f"{method_name}: {result['error']}")
        else:
            logger.debug(
                f"{method_name}: Reply received ({len(result['text'])} chars, finish: {result.get('finish_reason')})"
            )
        return result

    async def close(self) -> None:
        await self.client.aclose()
