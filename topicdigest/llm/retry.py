"""Shared Gemini call with retry.

Transient Vertex AI failures are converted to builtin exception types and
retried with exponential backoff; anything else propagates immediately.
"""

from __future__ import annotations

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from topicdigest.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_TEMPERATURE
from topicdigest.llm.gemini import get_gemini_model_with_options
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter

logger = get_logger(__name__)

LLM_MAX_RETRIES = 3


@retry(
    stop=stop_after_attempt(LLM_MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((TimeoutError, ConnectionError, OSError)),
    reraise=True,
)
def call_llm(
    prompt: str,
    counter_prefix: str = "llm",
    system_instruction: str | None = None,
    max_output_tokens: int = GEMINI_MAX_TOKENS,
) -> str:
    """Call Gemini and return the response text.

    Raises:
        TimeoutError: On deadline exceeded (retried)
        ConnectionError: On service unavailable or internal error (retried)
        OSError: On resource exhausted / rate limited (retried)
        Exception: On other errors (not retried)
    """
    from google.api_core.exceptions import (
        DeadlineExceeded,
        InternalServerError,
        ResourceExhausted,
        ServiceUnavailable,
    )

    model = get_gemini_model_with_options(system_instruction=system_instruction)
    generation_config = {
        "temperature": GEMINI_TEMPERATURE,
        "max_output_tokens": max_output_tokens,
    }

    try:
        response = model.generate_content(prompt, generation_config=generation_config)
        return response.text
    except DeadlineExceeded as e:
        counter(f"{counter_prefix}.timeout")
        raise TimeoutError(f"LLM call timed out: {e}") from e
    except ServiceUnavailable as e:
        counter(f"{counter_prefix}.service_unavailable")
        logger.warning("LLM service unavailable, will retry: %s", e)
        raise ConnectionError(f"LLM service unavailable: {e}") from e
    except ResourceExhausted as e:
        counter(f"{counter_prefix}.rate_limited")
        logger.warning("LLM rate limited (429), will retry: %s", e)
        raise OSError(f"LLM rate limited: {e}") from e
    except InternalServerError as e:
        counter(f"{counter_prefix}.internal_error")
        logger.warning("LLM internal error (500), will retry: %s", e)
        raise ConnectionError(f"LLM internal error: {e}") from e
