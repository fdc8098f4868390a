"""Retry policies for execution attempts and merges."""

import logging
from dataclasses import dataclass
from enum import Enum

from ..validation.runner import VerificationResult

logger = logging.getLogger(__name__)


class AttemptDecision(str, Enum):
    """What the orchestrator does after verifying one attempt."""

    COMMIT = "commit"
    RETRY = "retry"
    ABORT = "abort"


@dataclass(frozen=True)
class AttemptOutcome:
    """Typed result of one execution attempt."""

    attempt: int
    decision: AttemptDecision
    verification: VerificationResult

    @property
    def success(self) -> bool:
        return self.decision == AttemptDecision.COMMIT


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for failed verification. Attempts are re-dispatched immediately."""

    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")

    def evaluate(self, attempt: int, verification: VerificationResult) -> AttemptOutcome:
        """Decide what follows attempt number ``attempt`` (1-based).

        Args:
            attempt: Attempt that was just verified
            verification: Verifier result for that attempt

        Returns:
            COMMIT on pass, RETRY while below the ceiling, ABORT at the ceiling
        """
        if verification.passed:
            decision = AttemptDecision.COMMIT
        elif attempt < self.max_attempts:
            decision = AttemptDecision.RETRY
        else:
            decision = AttemptDecision.ABORT

        logger.debug(f"Attempt {attempt}/{self.max_attempts}: {decision.value}")
        return AttemptOutcome(attempt=attempt, decision=decision, verification=verification)


@dataclass(frozen=True)
class MergeRetryPolicy:
    """Retry of merges that failed because another process held the repository lock."""

    max_attempts: int = 3
    delay_sec: float = 2.0

    def should_retry(self, attempt: int, retryable: bool) -> bool:
        """Whether to try again after failed merge attempt ``attempt`` (1-based)."""
        return retryable and attempt < self.max_attempts
