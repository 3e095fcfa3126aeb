from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stepledger.config import RegressionPolicy
from stepledger.ledger import downgrade_regressed_step
from stepledger.models import Session, StepStatus, isoformat, utcnow
from stepledger.oracle import VerificationContext, VerificationOracle

log = logging.getLogger(__name__)


@dataclass(slots=True)
class Regression:
    step_id: str
    description: str
    message: str
    verification: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "description": self.description,
            "message": self.message,
            "verification": self.verification,
        }


class RegressionRechecker:
    """Re-verifies earlier completed steps whenever another step completes."""

    def __init__(self, oracle: VerificationOracle, policy: RegressionPolicy = "warn") -> None:
        if policy not in {"warn", "block"}:
            raise ValueError(f"Unsupported regression policy: {policy}")
        self.oracle = oracle
        self.policy = policy

    def recheck(
        self,
        session: Session,
        completed_step_id: str,
        context: VerificationContext | None = None,
        now: datetime | None = None,
    ) -> list[Regression]:
        candidates = [
            step
            for step in session.steps
            if step.status == StepStatus.COMPLETED and step.id != completed_step_id
        ]
        if not candidates:
            return []

        regressions: list[Regression] = []
        for step in candidates:
            result = self.oracle.verify(step.description, context)
            if result.passed is None:
                continue
            if result.passed:
                log.debug("%s still passes", step.id)
                continue

            regressions.append(
                Regression(
                    step_id=step.id,
                    description=step.description,
                    message=result.message,
                    verification=result.verification,
                )
            )
            if self.policy == "block":
                downgrade_regressed_step(session, step.id, result.message)
                log.warning("Regression in %s (%s): %s", step.id, step.description, result.message)
            else:
                log.warning(
                    "Possible regression in %s (%s): %s", step.id, step.description, result.message
                )

        if regressions:
            session.last_regression_check = {
                "timestamp": isoformat(now or utcnow()),
                "triggered_by": completed_step_id,
                "policy": self.policy,
                "regressions": [item.to_dict() for item in regressions],
            }
        return regressions
