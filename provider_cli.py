"""
Provider CLI Adapter
====================

Runs generation requests through an installed agent CLI and applies
prompt-based workarounds when providers lack native capability parity.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import PipelineConfig, normalize_provider_id
from errors import BackendError
from models import GenerationRequest
from stream_cleaning import StreamCleaner

logger = logging.getLogger(__name__)

STDERR_PREVIEW_CHARS = 500
# stream-json lines carry whole assistant messages
STREAM_LINE_LIMIT = 16 * 1024 * 1024


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capability flags used to choose native flags vs shim behavior."""

    supports_native_system_prompt: bool
    supports_json_stream: bool


CAPABILITIES: dict[str, ProviderCapabilities] = {
    "claude": ProviderCapabilities(
        supports_native_system_prompt=True,
        supports_json_stream=True,
    ),
    "codex": ProviderCapabilities(
        supports_native_system_prompt=False,
        supports_json_stream=False,
    ),
    "omp": ProviderCapabilities(
        supports_native_system_prompt=True,
        supports_json_stream=True,
    ),
    "opencode": ProviderCapabilities(
        supports_native_system_prompt=False,
        supports_json_stream=False,
    ),
}

INSTALL_HINTS: dict[str, str] = {
    "claude": "Install/auth the Claude CLI, then run: claude login",
    "codex": "Install/setup Codex CLI: https://developers.openai.com/codex/cli/reference",
    "omp": "Install/setup Oh-My-Pi CLI: https://github.com/can1357/oh-my-pi?tab=readme-ov-file#cli-reference",
    "opencode": "Install/setup Opencode CLI: https://opencode.ai/docs/cli/",
}


def provider_binary(provider_id: str, cfg: PipelineConfig) -> str:
    """Resolve the executable name/path for the selected provider."""
    if provider_id == "claude":
        return cfg.agent_cli_bin_claude
    if provider_id == "codex":
        return cfg.agent_cli_bin_codex
    if provider_id == "omp":
        return cfg.agent_cli_bin_omp
    return cfg.agent_cli_bin_opencode


def provider_default_model(provider_id: str, cfg: PipelineConfig) -> str:
    """Resolve per-provider default model from config."""
    if provider_id == "claude":
        return cfg.agent_cli_model_claude
    if provider_id == "codex":
        return cfg.agent_cli_model_codex
    if provider_id == "omp":
        return cfg.agent_cli_model_omp
    return cfg.agent_cli_model_opencode


def ensure_provider_binary_exists(provider_id: str, cfg: PipelineConfig) -> str:
    """Fail fast with provider-specific install hints if executable is missing."""
    binary = provider_binary(provider_id, cfg)
    if shutil.which(binary):
        return binary
    raise BackendError(
        f"Selected provider '{provider_id}' is not installed or not in PATH "
        f"(binary: {binary}). {INSTALL_HINTS[provider_id]}"
    )


def _shim_prompt(
    prompt: str,
    system_prompt: str,
    require_json_output: bool = False,
) -> str:
    """
    Inject system/output contracts into user prompt when native flags are missing.
    """
    blocks: list[str] = []
    if system_prompt.strip():
        blocks.extend(["=== SYSTEM CONTRACT ===", system_prompt.strip(), ""])
    if require_json_output:
        blocks.extend(
            [
                "=== OUTPUT CONTRACT ===",
                "Return only valid JSON with no markdown fences or explanations.",
                "",
            ]
        )
    blocks.extend(["=== TASK ===", prompt])
    return "\n".join(blocks)


def build_command(
    provider_id: str,
    binary: str,
    request: GenerationRequest,
    *,
    streaming: bool,
    require_json_output: bool = False,
) -> tuple[list[str], Optional[str]]:
    """
    Build argv and stdin text for one request.

    Temperature and max output size are not exposed by the CLIs; they still
    take part in the request fingerprint.
    """
    caps = CAPABILITIES[provider_id]

    if provider_id == "claude":
        cmd = [binary, "-p", "--model", request.model]
        if request.system_prompt:
            cmd.extend(["--system-prompt", request.system_prompt])
        if streaming:
            cmd.extend(
                [
                    "--output-format",
                    "stream-json",
                    "--verbose",
                    "--include-partial-messages",
                ]
            )
        return cmd, request.prompt

    query = request.prompt
    if not caps.supports_native_system_prompt or require_json_output:
        query = _shim_prompt(
            prompt=request.prompt,
            system_prompt=request.system_prompt if not caps.supports_native_system_prompt else "",
            require_json_output=require_json_output,
        )

    if provider_id == "codex":
        return [binary, "exec", "--model", request.model, query], None
    if provider_id == "omp":
        cmd = [binary, "-p", query, "--model", request.model, "--mode", "json"]
        if request.system_prompt:
            cmd.extend(["--system-prompt", request.system_prompt])
        return cmd, None
    return [binary, "run", query, "--model", request.model], None


class CliChunkStream:
    """Async iterator over cleaned text deltas from one CLI process."""

    def __init__(
        self,
        provider_id: str,
        cmd: list[str],
        stdin_text: Optional[str],
        cwd: Path,
        cleaner: StreamCleaner,
        *,
        streaming: bool = True,
        line_limit: int = STREAM_LINE_LIMIT,
    ) -> None:
        self.provider_id = provider_id
        self.cmd = cmd
        self.stdin_text = stdin_text
        self.cwd = cwd
        self.cleaner = cleaner
        self.streaming = streaming
        self.line_limit = line_limit
        self.process: asyncio.subprocess.Process | None = None
        self.aborted = False
        self._stderr_task: asyncio.Task[bytes] | None = None
        self._pending: list[str] = []
        self._eof = False

    def __aiter__(self) -> "CliChunkStream":
        return self

    async def _spawn(self) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.PIPE if self.stdin_text is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd),
                limit=self.line_limit,
            )
        except OSError as exc:
            raise BackendError(f"Failed to start {self.cmd[0]}: {exc}") from exc
        if self.stdin_text is not None and process.stdin is not None:
            process.stdin.write(self.stdin_text.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        if process.stderr is not None:
            self._stderr_task = asyncio.ensure_future(process.stderr.read())
        logger.debug("Spawned %s (pid %s)", self.provider_id, process.pid)
        return process

    async def __anext__(self) -> str:
        if self.aborted:
            raise StopAsyncIteration
        if self.process is None:
            self.process = await self._spawn()
        process = self.process
        if process.stdout is None:
            raise BackendError(f"{self.provider_id} has no stdout pipe")

        while not self._pending:
            if self._eof:
                raise StopAsyncIteration
            try:
                raw = await process.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as exc:
                raise BackendError(
                    f"{self.provider_id} wrote an output line longer than {self.line_limit} bytes"
                ) from exc
            if not raw:
                self._eof = True
                await self._check_exit(process)
                raise StopAsyncIteration
            line = raw.decode("utf-8", errors="replace")
            for piece in self.cleaner.ingest(self.provider_id, line, streaming=self.streaming):
                if piece.kind == "thinking":
                    logger.debug("[thinking] %s", piece.text)
                else:
                    self._pending.append(piece.text)
        return self._pending.pop(0)

    async def _check_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        stderr = b""
        if self._stderr_task is not None:
            stderr = await self._stderr_task
        if returncode != 0 and not self.aborted:
            preview = stderr.decode("utf-8", errors="replace")[:STDERR_PREVIEW_CHARS]
            raise BackendError(
                f"{self.provider_id} exited with code {returncode}: {preview.strip()}"
            )

    def abort(self) -> None:
        self.aborted = True
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def aclose(self) -> None:
        if self.process is None:
            return
        if self.process.returncode is None:
            self.abort()
            await self.process.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            await asyncio.gather(self._stderr_task, return_exceptions=True)


class ProviderCliBackend:
    """GenerativeBackend backed by a provider CLI subprocess."""

    def __init__(
        self,
        cfg: PipelineConfig,
        provider_id: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        self.cfg = cfg
        self.name = normalize_provider_id(provider_id or cfg.agent_cli_id)
        self.cwd = cwd or Path.cwd()
        self.cleaner = StreamCleaner(show_thinking=cfg.agent_stream_show_thinking)

    @property
    def default_model(self) -> str:
        return provider_default_model(self.name, self.cfg)

    def ensure_available(self) -> str:
        return ensure_provider_binary_exists(self.name, self.cfg)

    def _open(self, request: GenerationRequest, *, streaming: bool) -> CliChunkStream:
        binary = provider_binary(self.name, self.cfg)
        cmd, stdin_text = build_command(
            self.name,
            binary,
            request,
            streaming=streaming,
            require_json_output=(
                self.cfg.agent_cli_require_json_output and "json" in request.system_prompt.lower()
            ),
        )
        return CliChunkStream(
            self.name, cmd, stdin_text, self.cwd, self.cleaner, streaming=streaming
        )

    def stream(self, request: GenerationRequest) -> CliChunkStream:
        return self._open(request, streaming=True)

    async def complete(self, request: GenerationRequest) -> str:
        chunks = self._open(request, streaming=False)
        parts: list[str] = []
        try:
            async for chunk in chunks:
                parts.append(chunk)
        finally:
            await chunks.aclose()
        return "".join(parts)
