"""
Agent Executor - Runs one fix attempt in an external agent.

The fix loop owns all retry policy; an executor runs exactly one task and
reports what happened. Cancelling the coroutine running execute() must
leave nothing behind, so subprocesses are started in their own process
group and the whole group is SIGKILLed on timeout or cancellation.
"""

import asyncio
import json
import os
import re
import signal
import subprocess
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import structlog

from continuity.core.config import settings
from continuity.core.fixing.policy import ModelSelector
from continuity.core.models import CapabilityTier, FixStrategy

logger = structlog.get_logger()

COMMIT_SHA_PATTERN = re.compile(r"\bcommit[:\s]+([0-9a-f]{7,40})\b", re.IGNORECASE)


@dataclass
class FixTask:
    """What the agent is asked to do."""
    test_id: str
    retry_number: int
    tier: CapabilityTier
    strategy: FixStrategy
    prompt: str
    working_dir: Optional[str] = None


@dataclass
class ExecutionResult:
    success: bool
    output: str = ""
    cost_usd: Decimal = Decimal("0")
    tokens_used: int = 0
    error: Optional[str] = None
    commit_sha: Optional[str] = None


class AgentExecutor(Protocol):
    async def execute(self, task: FixTask) -> ExecutionResult:
        ...


# ==========================================================================
# Process Helpers
# ==========================================================================

@dataclass
class ProcessResult:
    returncode: Optional[int]
    output: str
    timed_out: bool = False


async def kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process group led by proc and reap the leader."""
    if proc.returncode is None:
        try:
            if os.name == "nt":
                proc.kill()
            else:
                os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    await proc.wait()
    logger.warning("Process tree killed", pid=proc.pid)


async def run_command(
    argv: list[str],
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
) -> ProcessResult:
    """
    Run a command to completion in a fresh process group.

    Args:
        argv: Command and arguments
        timeout: Seconds before the group is killed; None waits forever
        cwd: Working directory

    Returns:
        ProcessResult; timed_out is set when the group had to be killed
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        cwd=cwd,
        start_new_session=True,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await kill_process_tree(proc)
        return ProcessResult(returncode=None, output="", timed_out=True)
    except asyncio.CancelledError:
        await kill_process_tree(proc)
        raise

    return ProcessResult(
        returncode=proc.returncode,
        output=stdout.decode(errors="replace") if stdout else "",
    )


# ==========================================================================
# Subprocess Executor
# ==========================================================================

class SubprocessAgentExecutor:
    """
    Runs settings.AGENT_COMMAND for each task.

    The agent is expected to print a JSON object (for example
    `claude --print --output-format json`); total_cost_usd and usage are
    read from it when present, otherwise cost is estimated from the tier.
    """

    def __init__(
        self,
        command: Optional[list[str]] = None,
        timeout: Optional[float] = None,
        model_selector: Optional[ModelSelector] = None,
    ):
        self.command = command or settings.AGENT_COMMAND
        self.timeout = timeout
        self.model_selector = model_selector or ModelSelector()

    def build_argv(self, task: FixTask) -> list[str]:
        values = {
            "model": task.tier.value,
            "strategy": task.strategy.value,
            "test_id": task.test_id,
            "prompt": task.prompt,
        }
        return [part.format(**values) for part in self.command]

    async def execute(self, task: FixTask) -> ExecutionResult:
        argv = self.build_argv(task)
        logger.info(
            "Running fix agent",
            test_id=task.test_id,
            retry_number=task.retry_number,
            model=task.tier.value,
            strategy=task.strategy.value,
        )

        try:
            result = await run_command(argv, timeout=self.timeout, cwd=task.working_dir)
        except FileNotFoundError as e:
            return ExecutionResult(success=False, error=f"Agent command not found: {e.filename}")

        if result.timed_out:
            return ExecutionResult(
                success=False,
                cost_usd=self.model_selector.estimate_cost(task.tier),
                error=f"Agent timed out after {self.timeout}s",
            )
        return self.parse_output(task, result)

    def parse_output(self, task: FixTask, result: ProcessResult) -> ExecutionResult:
        payload = self._load_json(result.output)

        tokens = 0
        cost = None
        text = result.output
        is_error = False
        if payload is not None:
            text = str(payload.get("result", result.output))
            is_error = bool(payload.get("is_error", False))
            usage = payload.get("usage") or {}
            tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
            if payload.get("total_cost_usd") is not None:
                cost = Decimal(str(payload["total_cost_usd"]))

        if cost is None:
            cost = self.model_selector.estimate_cost(task.tier, tokens or None)

        success = result.returncode == 0 and not is_error
        match = COMMIT_SHA_PATTERN.search(text)
        return ExecutionResult(
            success=success,
            output=text,
            cost_usd=cost,
            tokens_used=tokens,
            error=None if success else (text[-500:] or f"Agent exited with {result.returncode}"),
            commit_sha=match.group(1) if match else None,
        )

    @staticmethod
    def _load_json(output: str) -> Optional[dict]:
        # The JSON object is the last non-empty line
        for line in reversed(output.strip().splitlines()):
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                return None
            return payload if isinstance(payload, dict) else None
        return None
