import time

import pytest

from openrouter_blueprint.models import (
    DEFAULT_LOAD_BALANCING_STRATEGY,
    ChatCompletionRequest,
    ChatMessage,
    LlmError,
    LoadBalancingStrategy,
    ModelInfo,
    ModelNotSupportedError,
    NodeMetrics,
    NotImplementedLlmError,
    RequestFailedError,
    TextCompletionRequest,
)


def _model_dict():
    return {
        "id": "gpt-3.5-turbo",
        "name": "GPT-3.5 Turbo",
        "max_context_length": 4096,
        "supports_chat": True,
        "supports_text": True,
        "supports_embeddings": False,
        "parameters": {"quantization": "q4"},
    }


def test_model_info_round_trip():
    data = _model_dict()
    model = ModelInfo.from_dict(data)
    assert model.id == "gpt-3.5-turbo"
    assert model.max_context_length == 4096
    assert model.to_dict() == data


def test_model_info_parameters_default_empty():
    data = _model_dict()
    del data["parameters"]
    assert ModelInfo.from_dict(data).parameters == {}


def test_model_info_to_dict_copies_parameters():
    model = ModelInfo.from_dict(_model_dict())
    out = model.to_dict()
    out["parameters"]["extra"] = "x"
    assert "extra" not in model.parameters


@pytest.mark.parametrize("missing", ["id", "name", "max_context_length", "supports_chat"])
def test_model_info_missing_field(missing):
    data = _model_dict()
    del data[missing]
    with pytest.raises(ValueError, match=missing):
        ModelInfo.from_dict(data)


@pytest.mark.parametrize(
    "key,value",
    [("max_context_length", -1), ("max_context_length", True), ("supports_chat", "yes"), ("id", 3)],
)
def test_model_info_wrong_type(key, value):
    data = _model_dict()
    data[key] = value
    with pytest.raises(ValueError):
        ModelInfo.from_dict(data)


def test_model_info_rejects_non_string_parameters():
    data = _model_dict()
    data["parameters"] = {"a": 1}
    with pytest.raises(ValueError):
        ModelInfo.from_dict(data)


def test_strategy_values_match_environment_names():
    assert LoadBalancingStrategy("round_robin") is LoadBalancingStrategy.ROUND_ROBIN
    assert LoadBalancingStrategy("least_loaded") is LoadBalancingStrategy.LEAST_LOADED
    assert LoadBalancingStrategy("capability_based") is LoadBalancingStrategy.CAPABILITY_BASED
    assert LoadBalancingStrategy("latency_based") is LoadBalancingStrategy.LATENCY_BASED
    assert DEFAULT_LOAD_BALANCING_STRATEGY in set(LoadBalancingStrategy)


def test_request_defaults():
    chat = ChatCompletionRequest(model="m", messages=[ChatMessage(role="user", content="Hello")])
    assert chat.messages[0].name is None
    assert chat.max_tokens is None and chat.stream is None
    assert chat.additional_params == {}
    text = TextCompletionRequest(model="m", prompt="Once upon a time")
    assert text.temperature is None and text.additional_params == {}


def test_node_metrics_timestamp_is_current():
    before = int(time.time())
    metrics = NodeMetrics()
    assert before <= metrics.last_updated <= int(time.time())
    assert metrics.cpu_utilization >= 0.0
    assert metrics.gpu_utilization is None


@pytest.mark.parametrize("cls", [ModelNotSupportedError, RequestFailedError, NotImplementedLlmError])
def test_llm_errors_share_base(cls):
    with pytest.raises(LlmError) as excinfo:
        raise cls("boom")
    assert type(excinfo.value) is cls
    assert "boom" in str(excinfo.value)