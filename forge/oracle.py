"""
Optional LLM oracle used for classification and package quality judgment.

The shipped implementation talks to a local OpenCode server; any HTTP or
parsing failure is raised as ``OracleUnavailable`` so callers can fall back to
their deterministic paths.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from .classifier import Classification, TaskType
from .errors import OracleUnavailable

if TYPE_CHECKING:
    from .package import ContextPackage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OracleClassification:
    task_type: TaskType
    confidence: float
    rationale: str = ""


@dataclass(frozen=True)
class OracleJudgment:
    score: int
    rationale: str = ""


class Oracle(Protocol):
    """Stateless classifier/scorer judgment service."""

    async def classify(self, raw_request: str, prior: Classification) -> OracleClassification: ...

    async def judge(self, package: ContextPackage, criteria: list[str]) -> OracleJudgment: ...


@dataclass(frozen=True)
class OpencodePromptResult:
    session_id: str
    message_id: str
    raw_output: str


def _extract_text(parts: list[dict[str, Any]]) -> str:
    # Most useful text lives in parts with type == "text".
    texts: list[str] = []
    for part in parts:
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "".join(texts).strip()


class OpencodeClient:
    """Async client for the OpenCode local server."""

    def __init__(
        self,
        *,
        base_url: str,
        directory: str | None = None,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._directory = directory
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _params(self) -> dict[str, str]:
        return {"directory": self._directory} if self._directory else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: Any | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, params=params, json=body)
            resp.raise_for_status()
            return resp
        except httpx.RequestError as e:
            raise OracleUnavailable(f"OpenCode request failed ({method} {path}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise OracleUnavailable(
                f"OpenCode API error {status} ({method} {path}): {e.response.text[:200]}"
            ) from e

    async def create_session(self, *, title: str) -> str:
        """Create a new session and return session_id."""
        resp = await self._request("POST", "/session", params=self._params(), body={"title": title})
        try:
            payload = resp.json()
        except ValueError as exc:
            raise OracleUnavailable(f"Invalid JSON response from OpenCode: {resp.text[:200]}") from exc
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise OracleUnavailable(f"Unexpected create_session response: {payload}")
        return session_id

    async def prompt(
        self,
        *,
        session_id: str,
        agent: str,
        text: str,
        model: dict[str, str] | None = None,
    ) -> OpencodePromptResult:
        """Send a prompt to a session, returning assistant output."""
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}], "agent": agent}
        if model:
            body["model"] = model

        resp = await self._request(
            "POST", f"/session/{session_id}/message", params=self._params(), body=body
        )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise OracleUnavailable(f"Invalid JSON response from OpenCode: {resp.text[:200]}") from exc

        info = payload.get("info") if isinstance(payload, dict) else None
        parts = payload.get("parts") if isinstance(payload, dict) else None
        if not isinstance(info, dict) or not isinstance(parts, list):
            raise OracleUnavailable(f"Unexpected prompt response: {str(payload)[:200]}")

        raw_output = _extract_text([p for p in parts if isinstance(p, dict)])
        if not raw_output:
            logger.warning("OpenCode returned empty output for session %s", session_id)

        return OpencodePromptResult(
            session_id=session_id,
            message_id=str(info.get("id", "")),
            raw_output=raw_output,
        )


_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def extract_json(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model reply (fenced or bare)."""
    match = _JSON_BLOCK_RE.search(text) or _JSON_OBJECT_RE.search(text)
    if not match:
        raise OracleUnavailable("Oracle reply did not contain a JSON object")
    candidate = match.group(1) if match.re is _JSON_BLOCK_RE else match.group(0)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise OracleUnavailable(f"Oracle reply is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise OracleUnavailable("Oracle reply JSON is not an object")
    return data


def build_classification_prompt(raw_request: str, prior: Classification) -> str:
    types = ", ".join(t.value for t in TaskType)
    return (
        "You classify software development requests.\n\n"
        f"Task types: {types}.\n"
        f"Keyword heuristics suggest `{prior.task_type.value}` "
        f"(confidence {prior.confidence:.2f}, matched: {', '.join(prior.matched) or 'none'}).\n\n"
        f'REQUEST: "{raw_request}"\n\n'
        "Respond with JSON only:\n"
        '{"task_type": "<type>", "confidence": 0.0-1.0, "rationale": "<one sentence>"}'
    )


def build_judgment_prompt(package: ContextPackage, criteria: list[str]) -> str:
    files = "\n".join(f"- {e.path}: {e.reason}" for e in package.must_read) or "- (none)"
    checks = "\n".join(f"- {c}" for c in criteria)
    return (
        "You review context packages prepared for a coding agent.\n\n"
        f"Task type: {package.task_type.value}\n"
        f"Files to read:\n{files}\n"
        f"Acceptance criteria: {'; '.join(package.acceptance_criteria) or 'none'}\n\n"
        f"Judge the package against:\n{checks}\n\n"
        "Respond with JSON only:\n"
        '{"score": 0-100, "rationale": "<one sentence>"}'
    )


class OpencodeOracle:
    """Oracle backed by prompts to an OpenCode server session."""

    def __init__(
        self,
        client: OpencodeClient,
        *,
        agent: str = "plan",
        provider: str | None = None,
        classify_model: str | None = None,
        judge_model: str | None = None,
    ) -> None:
        self._client = client
        self._agent = agent
        self._provider = provider
        self._classify_model = classify_model
        self._judge_model = judge_model

    def _model(self, model_id: str | None) -> dict[str, str] | None:
        if not model_id or not self._provider:
            return None
        return {"providerID": self._provider, "modelID": model_id}

    async def _ask(self, title: str, text: str, model_id: str | None) -> dict[str, Any]:
        session_id = await self._client.create_session(title=title)
        result = await self._client.prompt(
            session_id=session_id, agent=self._agent, text=text, model=self._model(model_id)
        )
        return extract_json(result.raw_output)

    async def classify(self, raw_request: str, prior: Classification) -> OracleClassification:
        data = await self._ask(
            "forge: classify", build_classification_prompt(raw_request, prior), self._classify_model
        )
        try:
            task_type = TaskType(str(data.get("task_type", "")).lower())
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError) as exc:
            raise OracleUnavailable(f"Unusable oracle classification: {data}") from exc
        return OracleClassification(
            task_type=task_type,
            confidence=max(0.0, min(1.0, confidence)),
            rationale=str(data.get("rationale", "")),
        )

    async def judge(self, package: ContextPackage, criteria: list[str]) -> OracleJudgment:
        data = await self._ask(
            "forge: judge package", build_judgment_prompt(package, criteria), self._judge_model
        )
        try:
            score = int(round(float(data.get("score", -1))))
        except (TypeError, ValueError, OverflowError) as exc:
            raise OracleUnavailable(f"Unusable oracle judgment: {data}") from exc
        if not 0 <= score <= 100:
            raise OracleUnavailable(f"Oracle score out of range: {score}")
        return OracleJudgment(score=score, rationale=str(data.get("rationale", "")))
