"""Coding-agent executors.

``ClaudeCodeExecutor`` drives the ``claude`` CLI as a subprocess and reads
its ``stream-json`` event feed. ``DeepAgentExecutor`` runs a deepagents agent
in-process against a filesystem backend rooted at the worktree.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from deepagents import create_deep_agent
from deepagents.backends import FilesystemBackend
from langchain_core.messages import HumanMessage

from .clock import Clock, RealClock
from .errors import AgentExecutionError, AgentNotFoundError, AgentTimeoutError
from .llm import get_chat_model
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_STREAM_LINE_LIMIT = 1024 * 1024
_TOOL_INPUT_KEYS = {
    "Read": "file_path",
    "Edit": "file_path",
    "Write": "file_path",
    "Glob": "pattern",
    "Grep": "pattern",
    "Bash": "command",
    "Task": "description",
}


@dataclass(frozen=True)
class ExecuteConfig:
    prompt: str
    working_directory: str = ""
    timeout: float = 0.0
    env: dict[str, str] = field(default_factory=dict)
    json_schema: str = ""
    skip_permissions: bool = False


@dataclass
class ExecuteResult:
    output: str = ""
    exit_code: int = 0
    duration: float = 0.0


@dataclass(frozen=True)
class ProgressEvent:
    type: str  # tool_use | tool_result | text
    tool_name: str = ""
    tool_input: str = ""
    text: str = ""
    is_error: bool = False


AgentProgressCallback = Callable[[ProgressEvent], None]


class AgentExecutor(Protocol):
    async def execute(self, config: ExecuteConfig) -> ExecuteResult:
        ...

    async def execute_streaming(
        self, config: ExecuteConfig, on_progress: AgentProgressCallback | None = None
    ) -> ExecuteResult:
        ...


def summarize_tool_input(tool_name: str, tool_input: Any) -> str:
    if not isinstance(tool_input, dict):
        return ""
    key = _TOOL_INPUT_KEYS.get(tool_name)
    value = tool_input.get(key) if key else None
    return value if isinstance(value, str) else ""


def _content_to_text(content: Any) -> str:
    """Flatten LangChain message content (str, blocks, nested dicts) into text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict) and item.get("content") is not None:
                chunks.append(_content_to_text(item["content"]))
            else:
                chunks.append(json.dumps(item, sort_keys=True, default=str))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True, default=str)
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Return the text of the final message in an agent response."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        messages = response.get("messages")
        if isinstance(messages, list) and messages:
            return extract_agent_text(messages[-1])
        if "output" in response:
            return extract_agent_text(response["output"])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


class ClaudeCodeExecutor:
    def __init__(self, claude_path: str = "claude", *, clock: Clock | None = None) -> None:
        self.claude_path = claude_path
        self.clock = clock or RealClock()

    def _resolve_path(self) -> str:
        if self.claude_path and self.claude_path != "claude":
            return self.claude_path
        found = shutil.which("claude")
        if found is None:
            raise AgentNotFoundError("claude CLI not found in PATH")
        return found

    def _build_args(self, config: ExecuteConfig, *, streaming: bool) -> list[str]:
        args = [self._resolve_path(), "--print"]
        if streaming:
            args.extend(["--output-format", "stream-json", "--verbose"])
        elif config.json_schema:
            args.extend(["--output-format", "json"])
        if config.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if config.json_schema:
            args.extend(["--json-schema", config.json_schema])
        args.append(config.prompt)
        return args

    def _env(self, config: ExecuteConfig) -> dict[str, str] | None:
        if not config.env:
            return None
        return {**os.environ, **config.env}

    async def _with_timeout(self, work: Any, config: ExecuteConfig) -> ExecuteResult:
        start = self.clock.now()
        if config.timeout <= 0:
            result = await work
        else:
            try:
                result = await self.clock.wait_for(work, config.timeout)
            except AgentTimeoutError:
                raise
            except TimeoutError as exc:
                raise AgentTimeoutError(
                    f"agent execution timeout after {self.clock.since(start):.0f}s"
                ) from exc
        result.duration = self.clock.since(start)
        return result

    async def _spawn(self, config: ExecuteConfig, *, streaming: bool) -> asyncio.subprocess.Process:
        args = self._build_args(config, streaming=streaming)
        logger.info("Executing claude CLI (cwd=%s, timeout=%s)", config.working_directory or ".", config.timeout or "none")
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                cwd=config.working_directory or None,
                env=self._env(config),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise AgentNotFoundError(f"claude CLI not found: {args[0]}") from exc

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(Exception):
            await process.wait()

    @staticmethod
    def _raise_for_exit(returncode: int, stderr: str) -> None:
        if returncode == 0:
            return
        reason = "prompt is too long" if "Prompt is too long" in stderr else "see stderr"
        raise AgentExecutionError(
            f"agent execution failed with exit code {returncode} ({reason})",
            exit_code=returncode,
            stderr=stderr,
        )

    async def execute(self, config: ExecuteConfig) -> ExecuteResult:
        async def _run() -> ExecuteResult:
            process = await self._spawn(config, streaming=False)
            try:
                stdout, stderr = await process.communicate()
            except asyncio.CancelledError:
                await self._kill(process)
                raise
            returncode = process.returncode or 0
            self._raise_for_exit(returncode, stderr.decode("utf-8", errors="replace"))
            return ExecuteResult(output=stdout.decode("utf-8", errors="replace"), exit_code=returncode)

        return await self._with_timeout(_run(), config)

    async def execute_streaming(
        self, config: ExecuteConfig, on_progress: AgentProgressCallback | None = None
    ) -> ExecuteResult:
        async def _run() -> ExecuteResult:
            process = await self._spawn(config, streaming=True)
            if process.stdout is None or process.stderr is None:
                await self._kill(process)
                raise AgentExecutionError("agent execution failed: claude CLI output pipes unavailable")
            stderr_task = asyncio.ensure_future(process.stderr.read())
            final: dict[str, Any] | None = None
            tool_calls = 0
            try:
                async for raw_line in process.stdout:
                    chunk = _loads_chunk(raw_line)
                    if chunk is None:
                        continue
                    if chunk.get("type") == "result":
                        final = chunk
                    else:
                        tool_calls += _dispatch_chunk(chunk, on_progress)
                returncode = await process.wait()
                stderr = (await stderr_task).decode("utf-8", errors="replace")
            except ValueError as exc:
                raise AgentExecutionError(f"agent execution failed: unreadable stream output ({exc})") from exc
            finally:
                if not stderr_task.done():
                    stderr_task.cancel()
                if process.returncode is None:
                    await self._kill(process)

            self._raise_for_exit(returncode, stderr)
            output = _final_output(final)
            logger.info("Agent response received (%d characters, %d tool calls)", len(output), tool_calls)
            return ExecuteResult(output=output, exit_code=returncode)

        return await self._with_timeout(_run(), config)


def _loads_chunk(raw_line: bytes) -> dict[str, Any] | None:
    line = raw_line.strip()
    if not line:
        return None
    try:
        chunk = json.loads(line)
    except json.JSONDecodeError:
        return None
    return chunk if isinstance(chunk, dict) else None


def _dispatch_chunk(chunk: dict[str, Any], on_progress: AgentProgressCallback | None) -> int:
    """Forward assistant/user stream events as progress. Returns tool calls seen."""
    tool_calls = 0
    if chunk.get("type") == "assistant":
        message = chunk.get("message") or {}
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use":
                tool_calls += 1
                if on_progress is not None:
                    name = str(block.get("name", ""))
                    on_progress(
                        ProgressEvent(type="tool_use", tool_name=name, tool_input=summarize_tool_input(name, block.get("input")))
                    )
            elif block.get("type") == "text" and block.get("text") and on_progress is not None:
                on_progress(ProgressEvent(type="text", text=str(block["text"])))
    elif chunk.get("type") == "user":
        result = chunk.get("tool_use_result")
        if isinstance(result, str) and result and on_progress is not None:
            on_progress(ProgressEvent(type="tool_result", text=result, is_error=result.startswith("Error:")))
    return tool_calls


def _final_output(final: dict[str, Any] | None) -> str:
    if final is None:
        return ""
    if final.get("structured_output"):
        return json.dumps(
            {
                "type": "result",
                "result": final.get("result", ""),
                "structured_output": final["structured_output"],
                "is_error": bool(final.get("is_error", False)),
            }
        )
    result = final.get("result")
    return result if isinstance(result, str) else ""


class DeepAgentExecutor:
    """Runs a deepagents agent whose filesystem is the workflow's worktree."""

    SYSTEM_PROMPT = (
        "You are a senior software engineer working inside a git worktree. "
        "Read the repository before changing it, keep changes minimal and tested, "
        "and always finish with the JSON object the user asks for."
    )

    def __init__(self, model_name: str, *, clock: Clock | None = None, repo_root: Path | None = None) -> None:
        self.model_name = model_name
        self.clock = clock or RealClock()
        self.repo_root = repo_root

    def _invoke(self, config: ExecuteConfig) -> str:
        model = get_chat_model(model_name=self.model_name, repo_root=self.repo_root)
        root_dir = Path(config.working_directory) if config.working_directory else Path.cwd()
        agent = create_deep_agent(
            model=model,
            tools=[],
            backend=FilesystemBackend(root_dir=root_dir, virtual_mode=True),
            system_prompt=self.SYSTEM_PROMPT,
            name="workflow-agent",
        )
        response = agent.invoke(
            {"messages": [HumanMessage(content=config.prompt)]},
            config={"configurable": {"thread_id": f"workflow-{uuid.uuid4().hex[:8]}"}},
        )
        return extract_agent_text(response)

    async def execute(self, config: ExecuteConfig) -> ExecuteResult:
        start = self.clock.now()
        work = asyncio.to_thread(self._invoke, config)
        try:
            if config.timeout > 0:
                text = await self.clock.wait_for(work, config.timeout)
            else:
                text = await work
        except (AgentNotFoundError, AgentTimeoutError):
            raise
        except TimeoutError as exc:
            raise AgentTimeoutError(f"agent execution timeout after {self.clock.since(start):.0f}s") from exc
        except Exception as exc:
            raise AgentExecutionError(f"agent execution failed: {exc}") from exc
        return ExecuteResult(output=text, exit_code=0, duration=self.clock.since(start))

    async def execute_streaming(
        self, config: ExecuteConfig, on_progress: AgentProgressCallback | None = None
    ) -> ExecuteResult:
        result = await self.execute(config)
        if on_progress is not None and result.output:
            on_progress(ProgressEvent(type="text", text=result.output))
        return result


def build_executor(settings: RuntimeSettings, *, clock: Clock | None = None, repo_root: Path | None = None) -> AgentExecutor:
    if settings.agent_backend == "deepagents":
        return DeepAgentExecutor(settings.agent_model, clock=clock, repo_root=repo_root)
    return ClaudeCodeExecutor(settings.claude_path, clock=clock)
