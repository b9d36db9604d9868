"""LLM backend that talks to a vLLM server over its OpenAI-compatible API."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

import httpx

from .models import (
    ChatCompletionChoice,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    EmbeddingRequest,
    LlmCapabilities,
    ModelInfo,
    ModelNotSupportedError,
    NodeMetrics,
    NotImplementedLlmError,
    RequestFailedError,
    TextCompletionChoice,
    TextCompletionRequest,
    TextCompletionResponse,
    UsageInfo,
)

logger = logging.getLogger(__name__)

_MAX_CONTEXT_LENGTH = 4096


def _status_text(response: httpx.Response) -> str:
    reason = response.reason_phrase
    return f"{response.status_code} {reason}" if reason else str(response.status_code)


def _field(data: dict[str, Any], key: str, kind: type, optional: bool = False) -> Any:
    if key not in data or data[key] is None:
        if optional:
            return None
        raise ValueError(f"missing field `{key}`")
    value = data[key]
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"invalid value for field `{key}`: {value!r}")
    elif not isinstance(value, kind):
        raise ValueError(f"invalid type for field `{key}`: {value!r}")
    return value


def _object(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object for {what}, got {data!r}")
    return data


def _parse_usage(data: dict[str, Any]) -> UsageInfo | None:
    raw = data.get("usage")
    if raw is None:
        return None
    usage = _object(raw, "usage")
    return UsageInfo(
        prompt_tokens=_field(usage, "prompt_tokens", int),
        completion_tokens=_field(usage, "completion_tokens", int),
        total_tokens=_field(usage, "total_tokens", int),
    )


def _parse_header(data: Any) -> tuple[dict[str, Any], list[Any]]:
    body = _object(data, "response")
    for key, kind in (("id", str), ("object", str), ("created", int), ("model", str)):
        _field(body, key, kind)
    return body, _field(body, "choices", list)


def _parse_chat_response(data: Any) -> ChatCompletionResponse:
    body, raw_choices = _parse_header(data)
    choices = []
    for raw in raw_choices:
        choice = _object(raw, "choice")
        message = _object(_field(choice, "message", dict), "message")
        choices.append(
            ChatCompletionChoice(
                index=_field(choice, "index", int),
                message=ChatMessage(
                    role=_field(message, "role", str),
                    content=_field(message, "content", str),
                    name=_field(message, "name", str, optional=True),
                ),
                finish_reason=_field(choice, "finish_reason", str, optional=True),
            )
        )
    return ChatCompletionResponse(
        id=body["id"],
        object=body["object"],
        created=body["created"],
        model=body["model"],
        choices=choices,
        usage=_parse_usage(body),
    )


def _parse_text_response(data: Any) -> TextCompletionResponse:
    body, raw_choices = _parse_header(data)
    choices = []
    for raw in raw_choices:
        choice = _object(raw, "choice")
        choices.append(
            TextCompletionChoice(
                index=_field(choice, "index", int),
                text=_field(choice, "text", str),
                finish_reason=_field(choice, "finish_reason", str, optional=True),
            )
        )
    return TextCompletionResponse(
        id=body["id"],
        object=body["object"],
        created=body["created"],
        model=body["model"],
        choices=choices,
        usage=_parse_usage(body),
    )


def _error_details(response: httpx.Response) -> tuple[str, str] | None:
    """Return (message, type) from an OpenAI-style error body, if it has one."""
    try:
        data = response.json()
        error = _object(_object(data, "error response").get("error"), "error")
        return _field(error, "message", str), _field(error, "type", str)
    except ValueError:
        return None


def _model_ids(data: Any) -> list[str]:
    """Return the model ids listed in a decoded /v1/models answer."""
    body = _object(data, "models response")
    entries = _field(body, "data", list)
    return [_field(_object(entry, "model"), "id", str) for entry in entries]


def _sampling_options(request: ChatCompletionRequest | TextCompletionRequest) -> dict[str, Any]:
    options = {
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "top_p": request.top_p,
        "stream": request.stream,
    }
    return {key: value for key, value in options.items() if value is not None}


class VllmLlmClient:
    """Serves a single vLLM model through the generic LLM client interface."""

    def __init__(
        self, api_url: str, model: str, http_client: httpx.AsyncClient | None = None
    ) -> None:
        logger.info("Creating new VllmLlmClient with API URL: %s and model: %s", api_url, model)
        self.api_url = api_url
        self.model = model
        self.metrics = NodeMetrics()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=None)

    async def __aenter__(self) -> VllmLlmClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client:
            await self.http_client.aclose()

    async def _model_available(self) -> bool:
        url = f"{self.api_url}/v1/models"
        logger.debug("Checking if model '%s' exists in vLLM via %s", self.model, url)
        try:
            response = await self.http_client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Failed to get vLLM models: %s", exc)
        else:
            if response.is_success:
                try:
                    ids = _model_ids(response.json())
                except ValueError:
                    pass
                else:
                    is_valid = self.model in ids
                    logger.debug("Model '%s' validation result: %s", self.model, is_valid)
                    return is_valid
        logger.debug("Model validation failed, assuming model '%s' is invalid", self.model)
        return False

    async def get_supported_models(self) -> list[ModelInfo]:
        """List the configured model if the server has it, otherwise nothing."""
        if not await self._model_available():
            logger.warning(
                "Model '%s' is not available in vLLM, returning empty model list", self.model
            )
            return []
        logger.info("Model '%s' is available in vLLM", self.model)
        return [
            ModelInfo(
                id=self.model,
                name=self.model,
                max_context_length=_MAX_CONTEXT_LENGTH,
                supports_chat=True,
                supports_text=True,
                supports_embeddings=False,
            )
        ]

    def get_capabilities(self) -> LlmCapabilities:
        """Describe what this backend supports."""
        return LlmCapabilities(
            supports_streaming=True,
            max_concurrent_requests=4,
            supports_batching=True,
        )

    def get_metrics(self) -> NodeMetrics:
        """Return a snapshot of the node metrics."""
        return dataclasses.replace(self.metrics)

    async def _ensure_supported(self, requested: str, purpose: str) -> None:
        models = await self.get_supported_models()
        if not any(model.id == requested for model in models):
            logger.error("Model '%s' is not available in vLLM for %s", requested, purpose)
            raise ModelNotSupportedError(f"Model '{requested}' is not available in vLLM")

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        """Send a request and return the decoded body of a successful answer."""
        url = f"{self.api_url}{path}"
        logger.debug("Sending request to %s", url)
        try:
            response = await self.http_client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Failed to send request to vLLM API: %s", exc)
            raise RequestFailedError(f"Failed to send request to vLLM API: {exc}") from exc

        if not response.is_success:
            details = _error_details(response)
            if details is not None:
                message, error_type = details
                logger.error("vLLM API error: %s (%s)", message, error_type)
                raise RequestFailedError(f"vLLM API error: {message} ({error_type})")
            status = _status_text(response)
            logger.error("vLLM API error: %s", status)
            raise RequestFailedError(f"vLLM API error: {status}")

        try:
            return response.json()
        except ValueError as exc:
            logger.error("Failed to parse vLLM response: %s", exc)
            raise RequestFailedError(f"Failed to parse vLLM response: {exc}") from exc

    async def chat_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """Forward a chat request to /v1/chat/completions."""
        logger.info("Processing chat completion request for model: %s", request.model)
        await self._ensure_supported(request.model, "chat completion")

        messages = []
        for message in request.messages:
            entry = {"role": message.role, "content": message.content}
            if message.name is not None:
                entry["name"] = message.name
            messages.append(entry)
        payload = {"model": request.model, "messages": messages, **_sampling_options(request)}

        data = await self._post("/v1/chat/completions", payload)
        try:
            result = _parse_chat_response(data)
        except ValueError as exc:
            logger.error("Failed to parse vLLM response: %s", exc)
            raise RequestFailedError(f"Failed to parse vLLM response: {exc}") from exc
        logger.info("Completed chat completion request")
        return result

    async def text_completion(self, request: TextCompletionRequest) -> TextCompletionResponse:
        """Forward a prompt to /v1/completions."""
        logger.info("Processing text completion request for model: %s", request.model)
        await self._ensure_supported(request.model, "text completion")

        payload = {"model": request.model, "prompt": request.prompt, **_sampling_options(request)}
        data = await self._post("/v1/completions", payload)
        try:
            result = _parse_text_response(data)
        except ValueError as exc:
            logger.error("Failed to parse vLLM response: %s", exc)
            raise RequestFailedError(f"Failed to parse vLLM response: {exc}") from exc
        logger.info("Completed text completion request")
        return result

    async def embeddings(self, request: EmbeddingRequest) -> Any:
        """Embeddings are not offered by this backend."""
        logger.info("Processing embedding request for model: %s", request.model)
        await self._ensure_supported(request.model, "embeddings")
        logger.warning("Embeddings are not implemented in this vLLM blueprint example")
        raise NotImplementedLlmError("vLLM embeddings not implemented in this example")