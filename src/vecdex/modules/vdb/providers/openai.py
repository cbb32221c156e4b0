"""OpenAI embedding model implementation."""

from __future__ import annotations

import asyncio
import os
import random
import time
from typing import Awaitable, Callable, Mapping

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from vecdex.core.errors import (
    DimensionMismatchError,
    EmbeddingConfigurationError,
    EmbeddingRateLimitError,
    EmbeddingRequestError,
    EmbeddingRetryExceededError,
    EmbeddingRetryableError,
    InvalidDataError,
)
from vecdex.core.logging import Logger, get_logger
from vecdex.core.secrets import SecureCredential

from . import ProviderInitContext

__all__ = [
    "OpenAIEmbeddingModel",
    "openai_provider_factory",
]

_DEFAULT_MODEL = "text-embedding-3-small"
_DEFAULT_TIMEOUT = 30.0
_BACKOFF_BASE = 0.5
_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 8.0
_JITTER_RATIO = 0.2
_MAX_ATTEMPTS = 5

_MODEL_DIMENSIONS: Mapping[str, int] = {
    "text-embedding-3-small": 1_536,
    "text-embedding-3-large": 3_072,
    "text-embedding-ada-002": 1_536,
}

# Only the text-embedding-3 family accepts a ``dimensions`` request argument.
_SHORTENABLE = frozenset({"text-embedding-3-small", "text-embedding-3-large"})


def _resolve_timeout(config: Mapping[str, object]) -> float:
    raw_env = os.environ.get("OPENAI_TIMEOUT_SECONDS")
    raw_config = config.get("timeout")
    value = raw_env or raw_config
    if value is None:
        return _DEFAULT_TIMEOUT
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "OPENAI_TIMEOUT_SECONDS must be a number when provided.",
        ) from exc
    if parsed <= 0:
        raise ValueError("OPENAI_TIMEOUT_SECONDS must be positive.")
    return parsed


def _resolve_api_key(config: Mapping[str, object]) -> SecureCredential | None:
    candidate = config.get("api_key")
    if isinstance(candidate, SecureCredential):
        return candidate if candidate else None
    if isinstance(candidate, str) and candidate:
        return SecureCredential(candidate)
    return SecureCredential.from_env("OPENAI_API_KEY")


class OpenAIEmbeddingModel:
    """Embed single texts through the OpenAI embeddings API.

    Rate limits, timeouts, connection failures and 5xx responses are retried
    with exponential backoff and jitter; everything else surfaces at once as
    an :class:`~vecdex.core.errors.EmbeddingProviderError`.
    """

    def __init__(
        self,
        *,
        model: str = _DEFAULT_MODEL,
        api_key: SecureCredential | None = None,
        dimensions: int | None = None,
        logger: Logger | None = None,
        config: Mapping[str, object] | None = None,
        client: AsyncOpenAI | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], float] = time.perf_counter,
    ) -> None:
        name = model.strip()
        if not name:
            raise ValueError("model cannot be blank")
        self.model = name
        self.logger = logger or get_logger(__name__, provider="openai")
        self._config = dict(config or {})
        self._sleep = sleep
        self._now = now
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._dimensions = self._resolve_dimensions(dimensions)
        self._api_key = api_key
        self._client = client or self._build_client()

    def _resolve_dimensions(self, requested: int | None) -> int:
        known = _MODEL_DIMENSIONS.get(self.model)
        if requested is None:
            if known is None:
                raise EmbeddingConfigurationError(
                    f"Unknown dimensions for model {self.model!r}; "
                    "pass dimensions explicitly.",
                    provider="openai",
                    model=self.model,
                )
            return known
        if requested < 1:
            raise EmbeddingConfigurationError(
                "dimensions must be >= 1",
                provider="openai",
                model=self.model,
            )
        if known is not None and requested != known and self.model not in _SHORTENABLE:
            raise EmbeddingConfigurationError(
                f"Model {self.model!r} does not support custom dimensions",
                provider="openai",
                model=self.model,
            )
        return requested

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the model lifetime."""

        return dict(self._stats)

    async def embed_text(self, text: str) -> list[float]:
        normalized = text.replace("\r\n", "\n").replace("\r", "\n").strip()
        if not normalized:
            raise InvalidDataError(
                "Cannot embed empty text",
                field="text",
            )
        vector = await self._invoke_with_retries(normalized)
        if len(vector) != self._dimensions:
            raise DimensionMismatchError(
                "Embedding dimension mismatch in OpenAI response.",
                expected=self._dimensions,
                actual=len(vector),
            )
        return vector

    async def close(self) -> None:
        await self._client.close()
        if self._api_key is not None:
            self._api_key.wipe()

    def _build_client(self) -> AsyncOpenAI:
        if self._api_key is None:
            self._api_key = _resolve_api_key(self._config)
        if self._api_key is None:
            raise EmbeddingConfigurationError(
                "OPENAI_API_KEY must be set to use the OpenAI provider.",
                provider="openai",
                model=self.model,
            )
        self._api_key.validate()

        base_url = self._config.get("base_url") or os.environ.get(
            "OPENAI_BASE_URL"
        )
        org_id = self._config.get("organization") or os.environ.get(
            "OPENAI_ORG_ID"
        )
        return AsyncOpenAI(
            api_key=self._api_key.reveal(),
            base_url=base_url,  # type: ignore[arg-type]
            organization=org_id,  # type: ignore[arg-type]
            timeout=_resolve_timeout(self._config),
            max_retries=0,
        )

    def _request_kwargs(self, text: str) -> dict[str, object]:
        kwargs: dict[str, object] = {"model": self.model, "input": [text]}
        if self.model in _SHORTENABLE and self._dimensions != _MODEL_DIMENSIONS[
            self.model
        ]:
            kwargs["dimensions"] = self._dimensions
        return kwargs

    async def _invoke_with_retries(self, text: str) -> list[float]:
        attempts = 0
        jitter_source = random.Random()

        while attempts < _MAX_ATTEMPTS:
            attempts += 1
            start = self._now()
            try:
                response = await self._client.embeddings.create(
                    **self._request_kwargs(text),
                )
            except Exception as exc:
                status, request_id = self._extract_context(exc)
                if not self._is_retryable(exc) or attempts >= _MAX_ATTEMPTS:
                    self._stats["failures"] += 1
                    error = self._translate_exception(
                        exc,
                        attempts=attempts,
                        model=self.model,
                        status=status,
                        request_id=request_id,
                    )
                    raise error from exc

                delay = self._compute_backoff(
                    attempt=attempts,
                    rng=jitter_source,
                )
                self.logger.warning(
                    "openai-embed-retry",
                    model=self.model,
                    attempt=attempts,
                    max_attempts=_MAX_ATTEMPTS,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                )
                self._stats["retries"] += 1
                await self._sleep(delay)
                continue

            self._stats["requests"] += 1
            self.logger.info(
                "openai-embed-request",
                model=self.model,
                latency=self._now() - start,
                attempts=attempts,
                recovered=attempts > 1,
            )
            if not response.data:
                raise EmbeddingRequestError(
                    "OpenAI returned no embeddings.",
                    provider="openai",
                    model=self.model,
                )
            return [float(value) for value in response.data[0].embedding]

        raise EmbeddingRetryExceededError(
            "Failed to embed text after multiple attempts.",
            provider="openai",
            model=self.model,
            attempts=attempts,
        )

    @staticmethod
    def _compute_backoff(*, attempt: int, rng: random.Random) -> float:
        if attempt <= 1:
            return 0.0
        base = _BACKOFF_BASE * (_BACKOFF_MULTIPLIER ** (attempt - 2))
        base = min(base, _BACKOFF_CAP)
        jitter = 1.0 + rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
        return round(base * jitter, 2)

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            status, _ = OpenAIEmbeddingModel._extract_context(exc)
            return status is not None and status >= 500
        return False

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        request_id: str | None = None

        status_value = getattr(exc, "status_code", None)
        if isinstance(status_value, int):
            status = status_value

        value = getattr(exc, "request_id", None)
        if isinstance(value, str):
            request_id = value

        return status, request_id

    @staticmethod
    def _translate_exception(
        exc: Exception,
        *,
        attempts: int,
        model: str,
        status: int | None,
        request_id: str | None,
    ) -> EmbeddingRequestError | EmbeddingRetryExceededError:
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": "openai",
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        if attempts >= _MAX_ATTEMPTS:
            return EmbeddingRetryExceededError(
                "Exceeded retry attempts when calling OpenAI embeddings API.",
                attempts=attempts,
                **context,
            )
        if isinstance(exc, RateLimitError):
            return EmbeddingRateLimitError(message, **context)
        if isinstance(
            exc,
            (APITimeoutError, APIConnectionError, httpx.HTTPError),
        ):
            return EmbeddingRetryableError(message, **context)
        if isinstance(exc, APIStatusError) and status and status >= 500:
            return EmbeddingRetryableError(message, **context)
        return EmbeddingRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingModel:
    """Factory registered with the provider registry."""

    config = context.config or {}
    dimensions = config.get("dimensions")
    return OpenAIEmbeddingModel(
        model=str(config.get("model") or _DEFAULT_MODEL),
        dimensions=int(dimensions) if dimensions is not None else None,  # type: ignore[arg-type]
        logger=context.logger,
        config=config,
    )
