"""Agent executor - validates requests, calls the language model, records history."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import Settings
from .config import settings as default_settings
from .contracts import (
    AgentContract,
    AgentInput,
    AgentOutput,
    failure_output,
    get_contract,
    validate_input,
    validate_output,
)
from .errors import RETRYABLE_ERRORS, ParseError, TransportError, ValidationError
from .history import ChatMessage, HistoryStore, compact_messages, create_history_store, history_key
from .llm_client import AnthropicClient, LanguageModel, TokenUsage
from .models import AgentType

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```json(?::structured_output)?[ \t]*\n?(.*?)```", re.DOTALL)


@dataclass
class AgentResult:
    """Result from running an agent. Failures are carried in-band."""

    agent: AgentType | str
    success: bool
    output: dict[str, Any]
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)
    attempts: int = 0
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class AgentInvocation:
    agent: AgentType | str
    payload: Mapping[str, Any]
    timeout: float | None = None
    retries: int | None = None
    context: str | None = None


def load_agent_instructions(agent_dir: Path, agent: AgentType) -> str:
    """Load the system prompt file for an agent."""
    prompt_file = agent_dir / get_contract(agent).prompt_file
    if not prompt_file.exists():
        raise FileNotFoundError(f"Agent prompt not found: {prompt_file}")
    return prompt_file.read_text(encoding="utf-8")


def build_user_message(
    agent_input: AgentInput, contract: AgentContract, context: str | None = None
) -> str:
    schema = json.dumps(contract.output_schema(), indent=2)
    context_block = f"CONTEXT:\n{context}\n\n" if context else ""
    return (
        f"{agent_input.summary()}\n\n"
        f"{context_block}"
        f"INSTRUCTIONS:\n{contract.instruction}\n\n"
        f"OUTPUT SCHEMA:\n{schema}\n\n"
        "Please analyze the input and return a structured JSON response "
        "matching the output schema."
    )


def _first_json_object(text: str) -> str | None:
    """Return the first balanced {...} span, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def extract_structured_output(text: str) -> dict[str, Any]:
    """Extract the JSON object from a model response.

    A ```json fenced block wins; otherwise the first top-level object is used.
    """
    candidates: list[str] = []
    match = _FENCED_JSON_RE.search(text)
    if match:
        candidates.append(match.group(1).strip())
    obj = _first_json_object(text)
    if obj is not None:
        candidates.append(obj)

    if not candidates:
        raise ParseError("No JSON found in response")

    last_error: json.JSONDecodeError | None = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if isinstance(parsed, dict):
            return parsed
    if last_error is not None:
        raise ParseError(f"Response JSON could not be decoded: {last_error}")
    raise ParseError("Response JSON is not an object")


class AgentExecutor:
    """Runs agents against the language model under their contracts."""

    def __init__(
        self,
        client: LanguageModel | None = None,
        *,
        history: HistoryStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or default_settings
        # Missing credentials fail here, never per call.
        self._client = client or AnthropicClient.from_settings(self._settings)
        self._history = history or create_history_store(
            self._settings.history_backend,
            redis_url=self._settings.redis_url,
            ttl_seconds=self._settings.history_ttl_seconds,
        )
        self._instructions: dict[AgentType, str] = {}

    @property
    def history(self) -> HistoryStore:
        return self._history

    async def aclose(self) -> None:
        aclose = getattr(self._client, "aclose", None)
        if aclose is not None:
            await aclose()

    async def execute(
        self,
        agent: AgentType | str,
        payload: Mapping[str, Any] | AgentInput,
        *,
        timeout: float | None = None,
        retries: int | None = None,
        context: str | None = None,
    ) -> AgentResult:
        """Run one agent. Always returns a result, never raises."""
        started = time.monotonic()
        try:
            agent = AgentType(agent)
        except ValueError as e:
            logger.warning("Rejected unknown agent %r", agent)
            return AgentResult(
                agent=str(agent),
                success=False,
                output={"success": False},
                duration_ms=_elapsed_ms(started),
                errors=[str(e)],
            )
        timeout = self._settings.agent_timeout if timeout is None else timeout
        retries = self._settings.max_retries if retries is None else retries

        try:
            agent_input = validate_input(agent, payload)
        except ValidationError as e:
            logger.warning("Rejected %s input: %s", agent, "; ".join(e.errors))
            return self._failure(agent, e.errors, started, attempts=0)

        return await self._attempt(
            agent, agent_input, timeout, retries, started, attempt=1, context=context
        )

    async def execute_parallel(self, invocations: Sequence[AgentInvocation]) -> list[AgentResult]:
        """Run several agents concurrently; results follow input order."""
        return list(
            await asyncio.gather(
                *(
                    self.execute(
                        inv.agent,
                        inv.payload,
                        timeout=inv.timeout,
                        retries=inv.retries,
                        context=inv.context,
                    )
                    for inv in invocations
                )
            )
        )

    async def clear_history(self, agent: AgentType | str, issue_number: int | None = None) -> int:
        return await self._history.clear_agent(AgentType(agent).value, issue_number)

    async def _attempt(
        self,
        agent: AgentType,
        agent_input: AgentInput,
        timeout: float,
        retries: int,
        started: float,
        *,
        attempt: int,
        context: str | None = None,
    ) -> AgentResult:
        try:
            output, usage = await self._run_once(agent, agent_input, timeout, context)
        except RETRYABLE_ERRORS as e:
            if retries > 0:
                delay = self._backoff(attempt)
                logger.warning(
                    "Agent %s attempt %d failed: %s (retrying in %.2fs, %d left)",
                    agent,
                    attempt,
                    e,
                    delay,
                    retries,
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                return await self._attempt(
                    agent,
                    agent_input,
                    timeout,
                    retries - 1,
                    started,
                    attempt=attempt + 1,
                    context=context,
                )
            logger.error("Agent %s failed after %d attempt(s): %s", agent, attempt, e)
            return self._failure(agent, [str(e)], started, attempts=attempt)
        except Exception as e:
            logger.exception("Agent %s failed", agent)
            return self._failure(agent, [str(e)], started, attempts=attempt)

        return AgentResult(
            agent=agent,
            success=output.success,
            output=output.to_payload(),
            duration_ms=_elapsed_ms(started),
            attempts=attempt,
            usage=usage,
        )

    async def _run_once(
        self,
        agent: AgentType,
        agent_input: AgentInput,
        timeout: float,
        context: str | None = None,
    ) -> tuple[AgentOutput, TokenUsage]:
        contract = get_contract(agent)
        system = self._system_prompt(agent)
        key = history_key(agent.value, agent_input.issue_number)

        request: ChatMessage = {
            "role": "user",
            "content": build_user_message(agent_input, contract, context),
        }
        messages = compact_messages([*await self._history.load(key), request])

        try:
            response = await asyncio.wait_for(
                self._client.complete(system, messages), timeout=timeout
            )
        except TimeoutError:
            raise TransportError(f"Agent {agent} timed out after {timeout}s") from None

        output = validate_output(agent, extract_structured_output(response.text))

        reply: ChatMessage = {
            "role": "assistant",
            "content": json.dumps(output.to_payload(), indent=2),
        }
        await self._history.save(key, [*messages, reply])
        return output, response.usage

    def _system_prompt(self, agent: AgentType) -> str:
        if agent not in self._instructions:
            self._instructions[agent] = load_agent_instructions(self._settings.agent_dir, agent)
        return self._instructions[agent]

    def _backoff(self, attempt: int) -> float:
        base = self._settings.retry_backoff_base
        if base <= 0:
            return 0.0
        ceiling = min(self._settings.retry_backoff_max, base * 2 ** (attempt - 1))
        return random.uniform(ceiling / 2, ceiling)

    def _failure(
        self, agent: AgentType, errors: list[str], started: float, *, attempts: int
    ) -> AgentResult:
        message = errors[0] if errors else "unknown error"
        return AgentResult(
            agent=agent,
            success=False,
            output=failure_output(agent, message).to_payload(),
            duration_ms=_elapsed_ms(started),
            errors=list(errors),
            attempts=attempts,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
