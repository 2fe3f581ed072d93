"""
Approval Policy Evaluator

Maps a step's approval policy and the outcomes of its tasks to a verdict.
Pure and deterministic: it is re-run after every single task resolution
with whatever outcomes exist so far.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from .models import ApprovalPolicy, TaskAction, Verdict


@dataclass(frozen=True)
class Tally:
    """Counts of task outcomes for one step"""
    approvals: int
    rejections: int
    unresolved: int

    @property
    def total(self) -> int:
        return self.approvals + self.rejections + self.unresolved

    @classmethod
    def of(cls, outcomes: Iterable[Optional[TaskAction]]) -> 'Tally':
        approvals = rejections = unresolved = 0
        for outcome in outcomes:
            if outcome is TaskAction.APPROVE:
                approvals += 1
            elif outcome is TaskAction.REJECT:
                rejections += 1
            else:
                unresolved += 1
        return cls(approvals, rejections, unresolved)


def _unanimous(tally: Tally, required_approvals: int) -> Verdict:
    if tally.rejections > 0:
        return Verdict.REJECTED
    if tally.total > 0 and tally.approvals == tally.total:
        return Verdict.APPROVED
    return Verdict.PENDING


def _majority(tally: Tally, required_approvals: int) -> Verdict:
    n = tally.total
    if tally.approvals * 2 > n:
        return Verdict.APPROVED
    if tally.rejections * 2 > n:
        return Verdict.REJECTED
    # An exact even split is not a majority either way and stays pending
    if tally.unresolved == 0 and tally.approvals * 2 == n:
        return Verdict.PENDING
    if (tally.approvals + tally.unresolved) * 2 <= n:
        return Verdict.REJECTED
    return Verdict.PENDING


def _any_one(tally: Tally, required_approvals: int) -> Verdict:
    if tally.approvals > 0:
        return Verdict.APPROVED
    if tally.total > 0 and tally.rejections == tally.total:
        return Verdict.REJECTED
    return Verdict.PENDING


def _quorum(tally: Tally, required_approvals: int) -> Verdict:
    if tally.approvals >= required_approvals:
        return Verdict.APPROVED
    if tally.rejections > tally.total - required_approvals:
        return Verdict.REJECTED
    return Verdict.PENDING


PolicyRule = Callable[[Tally, int], Verdict]

# UNANIMOUS and ALL share one rule
POLICY_RULES: Dict[ApprovalPolicy, PolicyRule] = {
    ApprovalPolicy.UNANIMOUS: _unanimous,
    ApprovalPolicy.ALL: _unanimous,
    ApprovalPolicy.MAJORITY: _majority,
    ApprovalPolicy.ANY_ONE: _any_one,
    ApprovalPolicy.QUORUM: _quorum,
}


def evaluate(policy: ApprovalPolicy, required_approvals: int,
             outcomes: Iterable[Optional[TaskAction]]) -> Verdict:
    """
    Evaluate a step verdict.

    Args:
        policy: The step's approval policy
        required_approvals: Approvals needed under QUORUM (ignored otherwise)
        outcomes: One entry per task of the step: APPROVE, REJECT, or
            NONE/None for a task that is not resolved yet

    Returns:
        APPROVED, REJECTED or PENDING
    """
    if required_approvals < 0:
        raise ValueError("required_approvals must not be negative")
    return POLICY_RULES[policy](Tally.of(outcomes), required_approvals)
