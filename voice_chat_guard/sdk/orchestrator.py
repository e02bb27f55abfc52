"""
LLM request orchestrator.

Builds a token-bounded chat-completion request, executes it against an
OpenAI-compatible endpoint (OpenRouter by default) through the retry policy,
and validates the reply. Persisting the new turn is the caller's job.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from ..config.loader import AppConfig
from ..core.errors import (
    ErrorKind,
    FatalFailure,
    LLMServiceError,
    RequestOutcome,
    Success,
    classify_exception,
    classify_status,
    failure_for,
    refine_kind,
)
from ..core.retry import RetryPolicy
from ..core.token_budget import ContextBudgeter
from ..storage.models import ConversationContext, Tier

logger = logging.getLogger(__name__)

AVAILABILITY_TIMEOUT_S = 5.0
APP_TITLE = "Voice Chat Guard"


def classify_api_error(error: Exception) -> LLMServiceError:
    """Translate an OpenAI SDK (or transport) exception into a classified error."""
    if isinstance(error, LLMServiceError):
        return error
    if isinstance(error, openai.APITimeoutError):
        return LLMServiceError("Request timed out", ErrorKind.TIMEOUT, status_code=408, cause=error)
    if isinstance(error, openai.APIConnectionError):
        return LLMServiceError("Network request failed", ErrorKind.NETWORK, cause=error)
    if isinstance(error, openai.APIStatusError):
        kind = refine_kind(classify_status(error.status_code), _provider_error_type(error))
        return LLMServiceError(
            error.message or f"HTTP {error.status_code}",
            kind,
            status_code=error.status_code,
            cause=error,
        )
    if isinstance(error, openai.APIResponseValidationError):
        return LLMServiceError("Malformed response from API", ErrorKind.VALIDATION, cause=error)

    kind = classify_exception(error)
    if kind == ErrorKind.TIMEOUT:
        return LLMServiceError("Request timed out", kind, status_code=408, cause=error)
    return LLMServiceError(f"Model call failed: {error}", kind, cause=error)


def _provider_error_type(error: openai.APIError) -> Optional[str]:
    for candidate in (error.type, error.code):
        if isinstance(candidate, str) and candidate:
            return candidate
    body = error.body
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict):
            for key in ("type", "code"):
                value = inner.get(key)
                if isinstance(value, str) and value:
                    return value
    return None


def validate_response(response: Any) -> RequestOutcome:
    """Check a transport-successful reply has usable content.

    A malformed reply is a VALIDATION failure and is never retried.
    """
    choices = getattr(response, "choices", None) if response is not None else None
    if not choices:
        return FatalFailure(ErrorKind.VALIDATION, "No response choices returned from API")

    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if not isinstance(content, str) or not content.strip():
        return FatalFailure(
            ErrorKind.VALIDATION,
            "Invalid response format: missing or empty message content",
        )

    usage = getattr(response, "usage", None)
    tokens_used = getattr(usage, "total_tokens", None) if usage is not None else None
    return Success(content=content.strip(), tokens_used=tokens_used, raw=response)


class LLMOrchestrator:
    """Chat-completion client with tier-aware context shaping and retries.

    Every failure surfaces as :class:`LLMServiceError` with a classified kind.
    """

    def __init__(
        self,
        config: AppConfig,
        client: Optional[AsyncOpenAI] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """Initialize the orchestrator.

        Args:
            config: Application configuration (required)
            client: Preconfigured async client; built from config when omitted
            retry_policy: Retry policy (defaults to one derived from config)
            sleep: Awaitable delay used between retries
            rand: Jitter source in [0, 1)
        """
        if config is None:
            raise ValueError("config is required")

        self.config = config
        self.budgeter = ContextBudgeter(config)
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self._sleep = sleep
        self._rand = rand
        # Retries are owned by the retry policy, not the SDK
        self.client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=0,
            default_headers={"X-Title": APP_TITLE},
        )

    def build_messages(
        self,
        prompt: str,
        context: Optional[ConversationContext],
        tier: Tier,
    ) -> List[Dict[str, str]]:
        """Truncated history followed by the current prompt."""
        history = self.budgeter.select_history(prompt, context, tier)
        messages = [{"role": m.role.value, "content": m.content} for m in history]
        messages.append({"role": "user", "content": prompt})
        return messages

    async def generate(
        self,
        prompt: str,
        context: Optional[ConversationContext],
        tier: Tier,
    ) -> str:
        """Generate a reply to ``prompt`` given prior conversation context.

        Args:
            prompt: Current user utterance (required)
            context: Prior conversation, or None for a fresh session
            tier: Subscription tier selecting model and budget

        Returns:
            Trimmed reply text

        Raises:
            ValueError: If prompt is empty
            LLMServiceError: On any classified failure, after retries
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        model_config = self.config.model_config(tier)
        messages = self.build_messages(prompt, context, tier)
        log_context = {
            "user_id": context.user_id if context else None,
            "session_id": context.session_id if context else None,
            "user_tier": tier.value,
            "prompt_length": len(prompt),
            "context_message_count": context.message_count if context else 0,
        }
        logger.info("Starting LLM response generation", extra=log_context)
        logger.debug(
            "Making chat completion request with %d messages to %s",
            len(messages), model_config.model,
            extra=log_context,
        )

        async def attempt(index: int, timeout_s: float) -> RequestOutcome:
            try:
                response = await asyncio.wait_for(
                    self.client.chat.completions.create(
                        model=model_config.model,
                        messages=messages,
                        max_tokens=model_config.max_response_tokens,
                        temperature=model_config.temperature,
                        top_p=model_config.top_p,
                        timeout=timeout_s,
                        extra_headers={"X-Retry-Attempt": str(index)},
                    ),
                    timeout=timeout_s,
                )
            except Exception as e:
                error = classify_api_error(e)
                logger.info(
                    "Chat completion attempt %d failed with %s",
                    index + 1, error.kind.name,
                    extra={**log_context, "error_kind": error.kind.value, "status_code": error.status_code},
                )
                return failure_for(error)
            return validate_response(response)

        started = time.monotonic()
        result = await self.retry_policy.run(
            attempt,
            self.config.response_timeout_ms,
            sleep=self._sleep,
            rand=self._rand,
        )
        duration_ms = (time.monotonic() - started) * 1000

        outcome = result.outcome
        if isinstance(outcome, Success):
            logger.info(
                "LLM response generated successfully",
                extra={
                    **log_context,
                    "response_length": len(outcome.content),
                    "tokens_used": outcome.tokens_used,
                    "attempts": result.attempts,
                    "duration_ms": duration_ms,
                },
            )
            return outcome.content

        cause = outcome.error
        error = LLMServiceError(
            outcome.detail,
            outcome.kind,
            status_code=cause.status_code if cause else None,
            cause=cause.cause if cause else None,
        )
        logger.error(
            "LLM response generation failed: %s", error,
            extra={
                **log_context,
                "error_kind": error.kind.value,
                "attempts": result.attempts,
                "duration_ms": duration_ms,
            },
        )
        raise error

    async def is_api_available(self) -> bool:
        """Lightweight availability probe (model listing, 5s timeout)."""
        try:
            await asyncio.wait_for(
                self.client.models.list(timeout=AVAILABILITY_TIMEOUT_S),
                timeout=AVAILABILITY_TIMEOUT_S,
            )
        except Exception as e:
            error = classify_api_error(e)
            logger.warning(
                "API availability check failed: %s", error,
                extra={"error_kind": error.kind.value, "status_code": error.status_code},
            )
            return False
        logger.debug("API is available")
        return True

    async def validate_configuration(self) -> bool:
        """Send a minimal request on the free model to verify key and connectivity."""
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.config.free_user_model,
                    messages=[{"role": "user", "content": "Hello"}],
                    max_tokens=10,
                    temperature=0.1,
                    timeout=self.config.response_timeout_ms / 1000.0,
                ),
                timeout=self.config.response_timeout_ms / 1000.0,
            )
        except Exception as e:
            error = classify_api_error(e)
            logger.warning(
                "API configuration validation failed: %s", error,
                extra={"error_kind": error.kind.value, "status_code": error.status_code},
            )
            return False

        if not isinstance(validate_response(response), Success):
            logger.warning("API configuration validation returned a malformed response")
            return False
        logger.info("API configuration validation successful")
        return True
