from __future__ import annotations

from dataclasses import dataclass

from ensdeploy.domain.contracts import BuildCanceller, ConfirmationReporter, DeploymentRepository


@dataclass(frozen=True)
class ApiDeps:
    repository: DeploymentRepository
    build_canceller: BuildCanceller
    confirmer: ConfirmationReporter
