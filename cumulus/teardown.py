from __future__ import annotations

from typing import Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from cumulus.errors import CumulusError
from cumulus.logger import logger

DELETED = "deleted"
FAILED = "failed"
SKIPPED = "skipped"

# Errors a best-effort teardown step records instead of propagating
TEARDOWN_ERRORS = (ClientError, BotoCoreError, CumulusError)


class TeardownStep(BaseModel):
    resource: str
    resource_id: str
    outcome: str
    error: Optional[str] = None


class TeardownReport(BaseModel):
    """
    Outcome of a best-effort teardown, one entry per resource deletion attempt.

    Teardown keeps going when a step fails so that as much as possible gets
    cleaned up. The report is what lets the caller (and tests) find out which
    resources were left behind.
    """

    steps: List[TeardownStep] = Field(default_factory=list)

    def run(
        self, resource: str, resource_id: str, action: Callable[[], object]
    ) -> bool:
        """
        Runs one deletion step and records its outcome.

        Args:
            resource (str): The resource class, e.g. "nat-gateway".
            resource_id (str): The identifier of the resource being removed.
            action (Callable): The deletion call.

        Returns:
            bool: True if the step succeeded.
        """
        try:
            action()
        except TEARDOWN_ERRORS as e:
            logger.warning(f"Failed to delete {resource} {resource_id}: {e}")
            self.steps.append(
                TeardownStep(
                    resource=resource,
                    resource_id=resource_id,
                    outcome=FAILED,
                    error=str(e),
                )
            )
            return False
        self.steps.append(
            TeardownStep(resource=resource, resource_id=resource_id, outcome=DELETED)
        )
        return True

    def skip(self, resource: str, resource_id: str, reason: str) -> None:
        self.steps.append(
            TeardownStep(
                resource=resource,
                resource_id=resource_id,
                outcome=SKIPPED,
                error=reason,
            )
        )

    def extend(self, other: "TeardownReport") -> None:
        self.steps.extend(other.steps)

    @property
    def failures(self) -> List[TeardownStep]:
        return [step for step in self.steps if step.outcome == FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures

    def failed_by_resource(self) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {}
        for step in self.failures:
            result.setdefault(step.resource, []).append(step.resource_id)
        return result

    def log_failures(self) -> None:
        for resource, ids in self.failed_by_resource().items():
            logger.warning(
                f"Could not delete {resource}: {', '.join(ids)}. "
                "Remove it manually or retry the destroy."
            )
