import json

import httpx
import pytest
from conftest import make_package

from forge.classifier import ClassificationMethod, TaskClassifier, TaskType
from forge.errors import OracleUnavailable
from forge.oracle import OpencodeClient, OpencodeOracle, extract_json


def opencode_transport(reply_text: str, calls: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == "/session":
            return httpx.Response(200, json={"id": "ses_1"})
        if request.url.path == "/session/ses_1/message":
            return httpx.Response(
                200, json={"info": {"id": "msg_1"}, "parts": [{"type": "text", "text": reply_text}]}
            )
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler)


def make_oracle(reply_text: str, calls: list[httpx.Request]) -> OpencodeOracle:
    client = OpencodeClient(
        base_url="http://opencode.test", directory="/tmp/shop", transport=opencode_transport(reply_text, calls)
    )
    return OpencodeOracle(client, provider="anthropic", classify_model="small-model")


@pytest.mark.asyncio
async def test_classify_parses_fenced_json() -> None:
    calls: list[httpx.Request] = []
    oracle = make_oracle('```json\n{"task_type": "Testing", "confidence": 1.4, "rationale": "asks for tests"}\n```', calls)
    prior = TaskClassifier().classify_heuristic("cover the loader")

    answer = await oracle.classify("cover the loader", prior)

    assert answer.task_type == TaskType.TESTING
    assert answer.confidence == 1.0
    assert calls[0].url.params["directory"] == "/tmp/shop"
    body = json.loads(calls[1].content)
    assert body["model"] == {"providerID": "anthropic", "modelID": "small-model"}
    assert "cover the loader" in body["parts"][0]["text"]


@pytest.mark.asyncio
async def test_judge_returns_score() -> None:
    oracle = make_oracle('Sure. {"score": 72.6, "rationale": "mostly relevant"}', [])
    judgment = await oracle.judge(make_package(), ["Every listed file is needed for the task"])
    assert judgment.score == 73
    assert judgment.rationale == "mostly relevant"


@pytest.mark.asyncio
async def test_out_of_range_score_is_unusable() -> None:
    oracle = make_oracle('{"score": 140}', [])
    with pytest.raises(OracleUnavailable):
        await oracle.judge(make_package(), [])


@pytest.mark.asyncio
async def test_unknown_task_type_is_unusable() -> None:
    oracle = make_oracle('{"task_type": "poetry", "confidence": 0.9}', [])
    with pytest.raises(OracleUnavailable):
        await oracle.classify("write a poem", TaskClassifier().classify_heuristic("write a poem"))


@pytest.mark.asyncio
async def test_http_errors_become_oracle_unavailable() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="overloaded"))
    client = OpencodeClient(base_url="http://opencode.test", transport=transport)
    with pytest.raises(OracleUnavailable, match="503"):
        await client.create_session(title="forge: classify")
    await client.aclose()


@pytest.mark.asyncio
async def test_connection_errors_become_oracle_unavailable() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = OpencodeClient(base_url="http://opencode.test", transport=httpx.MockTransport(refuse))
    with pytest.raises(OracleUnavailable):
        await client.create_session(title="forge: classify")
    await client.aclose()


def test_extract_json_requires_an_object() -> None:
    assert extract_json('noise {"a": 1} trailing') == {"a": 1}
    with pytest.raises(OracleUnavailable):
        extract_json("no json here")


def html_transport() -> httpx.MockTransport:
    return httpx.MockTransport(
        lambda request: httpx.Response(200, text="<html><body>Sign in to continue</body></html>")
    )


@pytest.mark.asyncio
async def test_non_json_session_reply_is_unavailable() -> None:
    client = OpencodeClient(base_url="http://opencode.test", transport=html_transport())
    with pytest.raises(OracleUnavailable, match="Invalid JSON"):
        await client.create_session(title="forge: classify")
    await client.aclose()


@pytest.mark.asyncio
async def test_classifier_falls_back_when_oracle_serves_html() -> None:
    client = OpencodeClient(base_url="http://opencode.test", transport=html_transport())
    classifier = TaskClassifier(OpencodeOracle(client), retries=2, retry_base_delay=0)

    result = await classifier.classify("add a README")

    assert result.task_type == TaskType.DOCUMENTATION
    assert result.method == ClassificationMethod.HEURISTIC
    await client.aclose()


@pytest.mark.asyncio
async def test_overflowing_score_is_unusable() -> None:
    oracle = make_oracle('{"score": 1e999}', [])
    with pytest.raises(OracleUnavailable):
        await oracle.judge(make_package(), [])
