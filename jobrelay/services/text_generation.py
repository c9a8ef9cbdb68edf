"""Text generation executor backed by an OpenAI-compatible chat completions API."""

import time
from typing import Any, Optional

import httpx
import structlog

from jobrelay.jobs.errors import (
    RateLimitedError,
    TerminalCallError,
    TransientNetworkError,
)
from jobrelay.jobs.models import ExecutionOutcome, RemoteStatus
from jobrelay.jobs.payloads import TextGenerationPayload
from jobrelay.jobs.types import JobKind

logger = structlog.get_logger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Parse a numeric Retry-After header, if present."""
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or "Unknown error"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return "Unknown error"


class GroqClient:
    """Minimal chat completions client.

    Maps HTTP failures onto the call error taxonomy so the retrying client
    can decide what to retry.
    """

    DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"

    def __init__(
        self,
        api_key: str,
        model: str = "llama-3.1-8b-instant",
        base_url: str = DEFAULT_BASE_URL,
        top_p: float = 0.9,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: API key sent as a bearer token
            model: Model name
            base_url: API base URL (".../openai/v1" for Groq)
            top_p: Nucleus sampling parameter
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests inject MockTransport)
        """
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.top_p = top_p
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        prompt: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
    ) -> dict[str, Any]:
        """
        Send a single-turn chat completion request.

        Returns:
            Dict with text, model, usage and latency_ms

        Raises:
            RateLimitedError: HTTP 429
            TransientNetworkError: Timeout, connection error, 408/5xx, malformed body
            TerminalCallError: Any other 4xx
        """
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "top_p": self.top_p,
        }

        start = time.perf_counter()
        try:
            response = await self._get_client().post("/chat/completions", json=body)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Text generation request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientNetworkError(f"Text generation request failed: {e}") from e
        latency_ms = (time.perf_counter() - start) * 1000

        status = response.status_code
        if status == 429:
            raise RateLimitedError(
                f"Text generation API rate limited: {_error_message(response)}",
                status_code=status,
                retry_after_seconds=_retry_after(response),
            )
        if status == 408 or status >= 500:
            raise TransientNetworkError(
                f"Text generation API error {status}: {_error_message(response)}",
                status_code=status,
            )
        if status >= 400:
            raise TerminalCallError(
                f"Text generation API error {status}: {_error_message(response)}",
                status_code=status,
            )

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientNetworkError(
                "Invalid response format from text generation API", status_code=status
            ) from e
        if not isinstance(text, str) or not text.strip():
            raise TransientNetworkError(
                "Invalid response format from text generation API", status_code=status
            )

        usage_data = data.get("usage") or {}
        usage = None
        if usage_data:
            usage = {
                "input_tokens": usage_data.get("prompt_tokens", 0),
                "output_tokens": usage_data.get("completion_tokens", 0),
            }

        actual_model = data.get("model", self.model)
        logger.debug(
            "text_generation_complete",
            model=actual_model,
            input_tokens=usage.get("input_tokens") if usage else None,
            output_tokens=usage.get("output_tokens") if usage else None,
            latency_ms=round(latency_ms, 2),
        )
        return {
            "text": text.strip(),
            "model": actual_model,
            "usage": usage,
            "latency_ms": round(latency_ms, 2),
        }


class TextGenerationExecutor:
    """Synchronous executor: every call returns the generated text directly."""

    kind = JobKind.TEXT_GENERATION
    is_async = False

    def __init__(self, client: GroqClient):
        self._client = client

    async def execute(self, payload: TextGenerationPayload) -> ExecutionOutcome:
        completion = await self._client.complete(
            payload.prompt,
            max_tokens=payload.max_tokens,
            temperature=payload.temperature,
        )
        return ExecutionOutcome(
            result={
                **completion,
                "purpose": payload.purpose.value,
                "report_id": payload.report_id,
            }
        )

    async def fetch_status(self, remote_handle: str) -> RemoteStatus:
        raise TerminalCallError(
            f"{self.kind.value} jobs complete synchronously; no status for {remote_handle}"
        )

    async def close(self) -> None:
        await self._client.close()
