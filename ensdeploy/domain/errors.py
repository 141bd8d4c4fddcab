from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class DeploymentNotFoundError(DomainError):
    pass


class DeploymentBusyError(DomainError):
    pass


class NoResumableDeploymentError(DomainValidationError):
    pass


class ChainMismatchError(DomainError):
    code = "CHAIN_MISMATCH"

    def __init__(self, *, required_chain_id: int, active_chain_id: int) -> None:
        super().__init__(
            f"Wallet connected to chain {active_chain_id}; switch to chain {required_chain_id} to publish."
        )
        self.required_chain_id = required_chain_id
        self.active_chain_id = active_chain_id
