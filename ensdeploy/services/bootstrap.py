from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from ensdeploy.api.handlers.deps import ApiDeps
from ensdeploy.clients.stub import (
    StubBuildCanceller,
    StubChainVerifier,
    StubContentStoreUploader,
    StubNamingPreparer,
    StubSigner,
)
from ensdeploy.domain.contracts import (
    BuildCanceller,
    ChainVerifier,
    ConfirmationReporter,
    ContentStoreUploader,
    DeploymentRepository,
    NamingPreparer,
    Notifier,
    Signer,
)
from ensdeploy.finalizer.orchestrator import FinalizationOrchestrator
from ensdeploy.repositories.postgres import AsyncpgPoolManager, PostgresDeploymentRepository
from ensdeploy.repositories.stub import InMemoryDeploymentRepository
from ensdeploy.roles import RuntimeRole
from ensdeploy.services.confirmation import RepositoryConfirmationReporter
from ensdeploy.services.notifications import LoggingNotifier


@dataclass
class RuntimeContainer:
    repository: DeploymentRepository
    uploader: ContentStoreUploader
    preparer: NamingPreparer
    signer: Signer
    verifier: ChainVerifier
    confirmer: ConfirmationReporter
    build_canceller: BuildCanceller
    notifier: Notifier
    api_deps: ApiDeps
    orchestrator: FinalizationOrchestrator | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(role: RuntimeRole) -> RuntimeContainer:
    database_url = os.getenv("DATABASE_URL")
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    repository: DeploymentRepository
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        repository = PostgresDeploymentRepository(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
    else:
        repository = InMemoryDeploymentRepository()

    uploader = StubContentStoreUploader()
    preparer = StubNamingPreparer()
    signer = StubSigner()
    verifier = StubChainVerifier()
    confirmer = RepositoryConfirmationReporter(repository=repository, verifier=verifier)
    build_canceller = StubBuildCanceller()
    notifier = LoggingNotifier()
    api_deps = ApiDeps(
        repository=repository,
        build_canceller=build_canceller,
        confirmer=confirmer,
    )

    orchestrator: FinalizationOrchestrator | None = None
    if role.name == "finalizer":
        orchestrator = FinalizationOrchestrator(
            repository=repository,
            uploader=uploader,
            preparer=preparer,
            confirmer=confirmer,
            notifier=notifier,
            signer=signer,
        )

    return RuntimeContainer(
        repository=repository,
        uploader=uploader,
        preparer=preparer,
        signer=signer,
        verifier=verifier,
        confirmer=confirmer,
        build_canceller=build_canceller,
        notifier=notifier,
        api_deps=api_deps,
        orchestrator=orchestrator,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
