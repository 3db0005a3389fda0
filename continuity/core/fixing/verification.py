"""
Verification - Re-run the failing check after a fix.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from continuity.core.config import settings
from continuity.core.fixing.executor import run_command
from continuity.core.fixing.rca import FailureReport

logger = structlog.get_logger()


@dataclass
class VerificationResult:
    passed: bool
    output: str = ""


class Verifier(Protocol):
    async def verify(self, failure: FailureReport) -> VerificationResult:
        ...


class CommandVerifier:
    """Runs settings.VERIFY_COMMAND with {test_id} substituted; exit 0 passes."""

    def __init__(
        self,
        command: Optional[list[str]] = None,
        timeout: Optional[float] = None,
        working_dir: Optional[str] = None,
    ):
        self.command = command or settings.VERIFY_COMMAND
        self.timeout = timeout or settings.FIX_VERIFY_TIMEOUT_SECONDS
        self.working_dir = working_dir

    async def verify(self, failure: FailureReport) -> VerificationResult:
        argv = [part.format(test_id=failure.test_id) for part in self.command]
        try:
            result = await run_command(argv, timeout=self.timeout, cwd=self.working_dir)
        except FileNotFoundError as e:
            return VerificationResult(passed=False, output=f"Verify command not found: {e.filename}")

        if result.timed_out:
            logger.warning("Verification timed out", test_id=failure.test_id, timeout=self.timeout)
            return VerificationResult(
                passed=False,
                output=f"Verification timed out after {self.timeout}s",
            )

        passed = result.returncode == 0
        logger.info("Verification finished", test_id=failure.test_id, passed=passed)
        return VerificationResult(passed=passed, output=result.output[-2000:])
