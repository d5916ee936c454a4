import pytest
import requests

from core.llm_utils import (
    ChatCompletionClient,
    LLMError,
    extract_json_from_llm_response,
    format_text_for_log,
    query_chat_llm,
)


@pytest.fixture
def no_sleep(mocker):
    return mocker.patch("core.llm_utils.time.sleep")


def reply(mocker, content):
    response = mocker.Mock()
    response.json.return_value = {"choices": [{"message": {"content": content}}], "usage": {}}
    return response


@pytest.mark.parametrize(
    "text, expected",
    [
        ('{"a": 1}', {"a": 1}),
        ('Here you go:\n```json\n{"a": [1, 2,],}\n```\nThanks', {"a": [1, 2]}),
        ("Sure. [1, 2] done", [1, 2]),
        ('{"text": "brace } inside"}', {"text": "brace } inside"}),
        ("{“a”: “b”}", {"a": "b"}),
        ("no json here", None),
        ('{"a": }', None),
        ("", None),
    ],
)
def test_extract_json(text, expected):
    assert extract_json_from_llm_response(text) == expected


def test_format_text_for_log_truncates():
    assert format_text_for_log("a\nb") == '"a b"'
    assert len(format_text_for_log("x" * 1000)) < 250


def test_query_returns_content(mocker):
    post = mocker.patch("core.llm_utils.requests.post", return_value=reply(mocker, " hi "))
    assert query_chat_llm("sys", "user", "http://llm/v1/", "m", api_key="k", max_tokens=5) == "hi"
    url = post.call_args[0][0]
    assert url == "http://llm/v1/chat/completions"
    kwargs = post.call_args[1]
    assert kwargs["json"]["max_tokens"] == 5
    assert "temperature" not in kwargs["json"]
    assert kwargs["headers"]["Authorization"] == "Bearer k"


def test_query_retries_then_fails(mocker, no_sleep):
    post = mocker.patch(
        "core.llm_utils.requests.post",
        side_effect=requests.exceptions.ConnectionError("refused"),
    )
    with pytest.raises(LLMError):
        query_chat_llm("sys", "user", "http://llm", "m")
    assert post.call_count == 3
    assert no_sleep.call_count == 2


def test_query_recovers_after_transient_failure(mocker, no_sleep):
    mocker.patch(
        "core.llm_utils.requests.post",
        side_effect=[requests.exceptions.Timeout("slow"), reply(mocker, "ok")],
    )
    assert query_chat_llm("sys", "user", "http://llm", "m") == "ok"


def test_empty_reply_is_an_error(mocker):
    mocker.patch("core.llm_utils.requests.post", return_value=reply(mocker, ""))
    with pytest.raises(LLMError):
        query_chat_llm("sys", "user", "http://llm", "m")


def test_client_reads_settings(mocker):
    client = ChatCompletionClient(
        {"LLM": {"url": "http://llm", "model": "m", "api_key": "k", "max_tokens": "100"}}
    )
    assert client.is_configured()
    assert client.max_tokens == 100
    query = mocker.patch("core.llm_utils.query_chat_llm", return_value="done")
    assert client.complete("s", "u") == "done"
    assert query.call_args[1]["max_tokens"] == 100
    assert not ChatCompletionClient({"LLM": {"url": "http://llm"}}).is_configured()
