"""Loop step executors, one per :class:`~afu9.lifecycle.state_machine.LoopStep`."""

from __future__ import annotations

from afu9.clients.github import GitHubClient
from afu9.lifecycle.state_machine import LoopStep
from afu9.lifecycle.steps.base import LoopStores, StepExecutor
from afu9.lifecycle.steps.s1_pick import PickIssueStep
from afu9.lifecycle.steps.s2_spec_ready import SpecReadyStep
from afu9.lifecycle.steps.s3_implement_prep import ImplementPrepStep
from afu9.lifecycle.steps.s4_review import ReviewGateStep
from afu9.lifecycle.steps.s5_merge import MergeStep
from afu9.lifecycle.steps.s6_deployment_observe import DeploymentObserveStep
from afu9.lifecycle.steps.s7_verify_gate import VerifyGateStep


def build_step_executors(github: GitHubClient) -> dict[LoopStep, StepExecutor]:
    executors: list[StepExecutor] = [
        PickIssueStep(),
        SpecReadyStep(),
        ImplementPrepStep(),
        ReviewGateStep(github),
        MergeStep(github),
        DeploymentObserveStep(github),
        VerifyGateStep(),
    ]
    return {executor.step: executor for executor in executors}


__all__ = [
    "DeploymentObserveStep",
    "ImplementPrepStep",
    "LoopStores",
    "MergeStep",
    "PickIssueStep",
    "ReviewGateStep",
    "SpecReadyStep",
    "StepExecutor",
    "VerifyGateStep",
    "build_step_executors",
]
