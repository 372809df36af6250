"""
FormPilot - Batch Builder
Cuts the decision source's action list into the batch for this cycle: every
action up to and including the first barrier (HIGH risk or unrecognised).
Whatever follows the barrier is discarded; the decision source re-plans from
the diff on the next cycle.
"""

from typing import List, Sequence

from formpilot.models.actions import ActionRequest, ExecutionBatch, RiskTier
from formpilot.services.risk import classify_request


class BatchBuilder:
    """Builds one ExecutionBatch per cycle."""

    def build(self, actions: Sequence[ActionRequest]) -> ExecutionBatch:
        batch = ExecutionBatch()
        for request in actions:
            tier = classify_request(request)
            batch.actions.append(request)
            batch.risk_tiers.append(tier)
            if tier == RiskTier.HIGH:
                batch.has_barrier = True
                break
        return batch

    def remaining(self, actions: Sequence[ActionRequest], batch: ExecutionBatch) -> List[ActionRequest]:
        """Actions left over after the batch."""
        return list(actions[len(batch.actions):])


def build_batch(actions: Sequence[ActionRequest]) -> ExecutionBatch:
    return BatchBuilder().build(actions)
