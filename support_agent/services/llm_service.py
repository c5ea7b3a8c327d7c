import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from support_agent.core.errors import LLMServiceError
from support_agent.services.prompt_builder import PromptMessage
from support_agent.services.retry import Attempting, FatalFailure, RetriableFailure, RetryPolicy

logger = logging.getLogger(__name__)

__all__ = ["LlmService", "LlmCompletion", "UpstreamError", "is_retriable_error"]


class UpstreamError(Exception):
    """A single failed call to the chat-completion API, already classified."""

    def __init__(self, message: str, retriable: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.retriable = retriable
        self.status_code = status_code


def is_retriable_error(error: BaseException) -> bool:
    return isinstance(error, UpstreamError) and error.retriable


@dataclass(frozen=True)
class LlmCompletion:
    content: str
    tokens_used: int
    model: str
    attempts: int = 1


class LlmService:
    """
    Client for the OpenRouter chat-completion API (OpenAI-compatible).

    Each call is retried according to a `RetryPolicy`: transient failures
    (timeouts, connection errors, 5xx, 429) back off and try again, fatal
    failures (401 and other 4xx, malformed responses) stop immediately.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        api_url: str = "https://openrouter.ai/api/v1",
        max_tokens: int = 300,
        temperature: float = 0.7,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initializes the LlmService.

        Args:
            api_key (str): OpenRouter API key sent as a bearer token.
            model (str): Model name passed with every request.
            api_url (str): Base URL of the API; `/chat/completions` is appended.
            max_tokens (int): Completion token limit per request.
            temperature (float): Sampling temperature.
            timeout (float): Default per-request timeout in seconds.
            retry_policy (RetryPolicy): Attempts and backoff; defaults to 3 attempts.
            http_client (httpx.AsyncClient): Client to use. One is created (and owned) when omitted.
            sleep: Awaitable used for backoff delays; injectable for tests.

        Raises:
            ValueError: If the API key or model is missing.
        """
        if not api_key:
            raise ValueError("LlmService requires an OpenRouter API key.")
        if not model:
            raise ValueError("LlmService requires a model name.")

        self.api_key = api_key
        self.model = model
        self.api_url = api_url.rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(is_retriable=is_retriable_error)
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)
        self.sleep = sleep

        logger.info(
            f"Initializing LlmService with model='{self.model}', max_attempts={self.retry_policy.max_attempts}"
        )

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "LlmService":
        policy = RetryPolicy(
            max_attempts=settings.LLM_MAX_RETRIES,
            base_delay=settings.LLM_BACKOFF_BASE,
            max_delay=settings.LLM_BACKOFF_MAX,
            jitter=settings.LLM_BACKOFF_JITTER,
            is_retriable=is_retriable_error,
        )
        return cls(
            api_key=settings.OPENROUTER_API_KEY,
            model=settings.OPENROUTER_MODEL,
            api_url=settings.OPENROUTER_API_URL,
            max_tokens=settings.OPENROUTER_MAX_TOKENS,
            temperature=settings.OPENROUTER_TEMPERATURE,
            timeout=settings.OPENROUTER_TIMEOUT,
            retry_policy=policy,
            **kwargs,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def generate_response(
        self,
        messages: List[PromptMessage],
        timeout: Optional[float] = None,
    ) -> LlmCompletion:
        """
        Sends the prompt and returns the first completion choice.

        Raises:
            LLMServiceError: After a fatal failure or once retries are exhausted.
                `retriable` is True when the last failure was transient.
        """
        state = self.retry_policy.start()

        while True:
            try:
                completion = await self._attempt(state, messages, timeout)
            except UpstreamError as error:
                outcome = self.retry_policy.on_failure(state, error)
                if isinstance(outcome, RetriableFailure):
                    logger.warning(
                        f"LLM call failed, retrying: attempt={outcome.attempt}/{self.retry_policy.max_attempts} "
                        f"backoff={outcome.delay:.2f}s error='{error.message}'"
                    )
                    await self.sleep(outcome.delay)
                    state = outcome.next()
                    continue
                raise self._to_service_error(outcome) from error

            success = self.retry_policy.on_success(state, completion)
            logger.info(
                f"LLM response generated successfully: model={self.model} "
                f"tokens_used={completion.tokens_used} attempt={success.attempt}"
            )
            return success.value

    async def _attempt(
        self, state: Attempting, messages: List[PromptMessage], timeout: Optional[float]
    ) -> LlmCompletion:
        data = await self._call_api(messages, timeout)
        content, tokens_used = self._parse_completion(data)
        return LlmCompletion(content=content, tokens_used=tokens_used, model=self.model, attempts=state.attempt)

    def _to_service_error(self, outcome: FatalFailure) -> LLMServiceError:
        error = outcome.error
        retriable = is_retriable_error(error)
        logger.error(
            f"LLM call failed: attempt={outcome.attempt} retriable={retriable} error='{error}'"
        )
        if retriable:
            message = f"AI service temporarily unavailable. Please try again. ({error})"
        else:
            message = f"AI service request failed. ({error})"
        return LLMServiceError(message, retriable=retriable)

    # --- HTTP ---

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": "https://ai-support-agent.com",
            "X-Title": "AI Support Agent",
        }

    async def _call_api(self, messages: List[PromptMessage], timeout: Optional[float] = None) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        logger.debug(f"Sending {len(messages)} messages to {self.api_url}/chat/completions")

        try:
            response = await self.client.post(
                f"{self.api_url}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamError("Request timeout", retriable=True) from e
        except httpx.ConnectError as e:
            raise UpstreamError(f"Cannot connect to OpenRouter: {e}", retriable=True) from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Network error talking to OpenRouter: {e}", retriable=True) from e

        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise UpstreamError("Malformed response from OpenRouter", retriable=False) from e

        status = response.status_code
        logger.error(f"OpenRouter API error: status={status} body={response.text[:500]}")

        if status == 401:
            raise UpstreamError("Invalid OpenRouter API key", retriable=False, status_code=status)
        if status == 429:
            raise UpstreamError("Rate limit exceeded on OpenRouter", retriable=True, status_code=status)
        if status >= 500:
            raise UpstreamError(f"OpenRouter server error: {status}", retriable=True, status_code=status)
        raise UpstreamError(self._error_message(response), retriable=False, status_code=status)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error") or {}
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
        except (ValueError, AttributeError):
            pass
        return f"OpenRouter API error: {response.status_code}"

    @staticmethod
    def _parse_completion(data: Dict[str, Any]) -> tuple:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices, list):
            raise UpstreamError("No response choices returned from LLM", retriable=False)

        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise UpstreamError("LLM response choice has no message content", retriable=False)

        usage = data.get("usage")
        if usage is None:
            return content, 0
        if not isinstance(usage, dict):
            raise UpstreamError("Malformed usage block in LLM response", retriable=False)
        try:
            tokens_used = int(usage.get("total_tokens") or 0)
        except (TypeError, ValueError) as e:
            raise UpstreamError("Malformed token count in LLM response", retriable=False) from e
        return content, tokens_used

    async def health_check(self) -> bool:
        """Sends a one-word prompt without retries; never raises."""
        try:
            data = await self._call_api([{"role": "user", "content": "Hello"}])
            self._parse_completion(data)
            return True
        except UpstreamError as e:
            logger.error(f"OpenRouter health check failed: {e}")
            return False
