"""Recorded compensations for work that spans the identity provider and our database."""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Compensation = Callable[[], Awaitable[None]]


@dataclass
class SagaStepRecord:
    step: str
    status: str  # started / completed / failed / conflict / compensated / compensation_failed
    error_message: Optional[str] = None


@dataclass
class Saga:
    name: str
    correlation_id: str
    max_compensation_attempts: int = 3
    steps: List[SagaStepRecord] = field(default_factory=list)
    _compensations: List[Tuple[str, Compensation]] = field(default_factory=list)

    def log_step(self, step: str, status: str, error_message: Optional[str] = None) -> None:
        self.steps.append(SagaStepRecord(step=step, status=status, error_message=error_message))
        logger.debug(f"[{self.name} {self.correlation_id}] {step}: {status}")

    def add_compensation(self, step: str, action: Compensation) -> None:
        self._compensations.append((step, action))

    def discard_compensations(self) -> None:
        self._compensations.clear()

    @property
    def pending_compensations(self) -> List[str]:
        return [step for step, _ in self._compensations]

    def statuses(self, step: str) -> List[str]:
        return [record.status for record in self.steps if record.step == step]

    async def compensate(self) -> bool:
        """Undo completed steps in reverse order.

        Compensating deletes are safe to repeat, so each one is retried a few
        times before it is reported as failed.
        """
        all_ok = True
        while self._compensations:
            step, action = self._compensations.pop()
            for attempt in range(1, self.max_compensation_attempts + 1):
                try:
                    await action()
                except Exception as exc:
                    logger.warning(
                        f"[{self.name} {self.correlation_id}] compensation for {step} failed "
                        f"(attempt {attempt}/{self.max_compensation_attempts}): {exc!r}"
                    )
                    if attempt == self.max_compensation_attempts:
                        self.log_step(step, "compensation_failed", repr(exc))
                        logger.error(
                            f"[{self.name} {self.correlation_id}] could not compensate {step}, manual cleanup needed"
                        )
                        all_ok = False
                else:
                    self.log_step(step, "compensated")
                    logger.warning(f"[{self.name} {self.correlation_id}] compensated {step}")
                    break
        return all_ok
