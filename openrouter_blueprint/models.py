"""Data types shared by the LLM backends and the blueprint configuration."""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class LoadBalancingStrategy(StrEnum):
    """How requests are spread over the available LLM nodes."""

    ROUND_ROBIN = "round_robin"
    LEAST_LOADED = "least_loaded"
    CAPABILITY_BASED = "capability_based"
    LATENCY_BASED = "latency_based"


DEFAULT_LOAD_BALANCING_STRATEGY = LoadBalancingStrategy.ROUND_ROBIN


def _require(data: Mapping[str, Any], key: str, kind: type) -> Any:
    if key not in data:
        raise ValueError(f"missing field {key!r}")
    value = data[key]
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"field {key!r} must be a non-negative integer, got {value!r}")
    elif not isinstance(value, kind):
        raise ValueError(f"field {key!r} must be of type {kind.__name__}, got {value!r}")
    return value


def _string_map(value: Any, key: str) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ValueError(f"field {key!r} must be a mapping, got {value!r}")
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in value.items()):
        raise ValueError(f"field {key!r} must map strings to strings")
    return dict(value)


@dataclass
class ModelInfo:
    """A model offered by an LLM node."""

    id: str
    name: str
    max_context_length: int
    supports_chat: bool
    supports_text: bool
    supports_embeddings: bool
    parameters: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModelInfo:
        """Build a model description from a decoded mapping; raises ValueError."""
        if not isinstance(data, Mapping):
            raise ValueError(f"model entry must be a mapping, got {data!r}")
        return cls(
            id=_require(data, "id", str),
            name=_require(data, "name", str),
            max_context_length=_require(data, "max_context_length", int),
            supports_chat=_require(data, "supports_chat", bool),
            supports_text=_require(data, "supports_text", bool),
            supports_embeddings=_require(data, "supports_embeddings", bool),
            parameters=_string_map(data.get("parameters", {}), "parameters"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the model description as plain data."""
        return {
            "id": self.id,
            "name": self.name,
            "max_context_length": self.max_context_length,
            "supports_chat": self.supports_chat,
            "supports_text": self.supports_text,
            "supports_embeddings": self.supports_embeddings,
            "parameters": dict(self.parameters),
        }


@dataclass
class ChatMessage:
    """One message of a chat conversation."""

    role: str
    content: str
    name: str | None = None


@dataclass
class ChatCompletionRequest:
    """A request for a chat completion."""

    model: str
    messages: list[ChatMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stream: bool | None = None
    additional_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageInfo:
    """Token accounting of a completion."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatCompletionChoice:
    """One generated chat message."""

    index: int
    message: ChatMessage
    finish_reason: str | None = None


@dataclass
class ChatCompletionResponse:
    """The answer to a chat completion request."""

    id: str
    object: str
    created: int
    model: str
    choices: list[ChatCompletionChoice]
    usage: UsageInfo | None = None


@dataclass
class TextCompletionRequest:
    """A request for a plain text completion."""

    model: str
    prompt: str
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stream: bool | None = None
    additional_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class TextCompletionChoice:
    """One generated text."""

    index: int
    text: str
    finish_reason: str | None = None


@dataclass
class TextCompletionResponse:
    """The answer to a text completion request."""

    id: str
    object: str
    created: int
    model: str
    choices: list[TextCompletionChoice]
    usage: UsageInfo | None = None


@dataclass
class EmbeddingRequest:
    """A request for embeddings of one or more inputs."""

    model: str
    input: list[str]
    additional_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class LlmCapabilities:
    """What an LLM node is able to do."""

    supports_streaming: bool
    max_concurrent_requests: int
    supports_batching: bool
    features: dict[str, bool] = field(default_factory=dict)


@dataclass
class NodeMetrics:
    """Load figures reported by an LLM node."""

    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    gpu_utilization: float | None = None
    requests_per_minute: int = 0
    average_response_time_ms: int = 0
    active_requests: int = 0
    last_updated: int = field(default_factory=lambda: int(time.time()))


class LlmError(Exception):
    """Base class of errors raised by LLM backends."""


class ModelNotSupportedError(LlmError):
    """The requested model is not served by the backend."""


class RequestFailedError(LlmError):
    """The request to the backend failed or its answer was unusable."""


class NotImplementedLlmError(LlmError):
    """The backend does not offer the requested operation."""