# reconcile_engine/container.py
"""Dependency injection container - wires all services together."""

import socket

from reconcile_engine.config import settings
from reconcile_engine.core.events import LoggingEventEmitter, MultiEventEmitter
from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.service import ReconcileService
from reconcile_engine.drift.cache import DriftCache
from reconcile_engine.drift.detector import DriftDetector
from reconcile_engine.infrastructure.postgres.repository import SqlStackRepository
from reconcile_engine.orchestrator.applier import ComposeCliApplier
from reconcile_engine.orchestrator.deploy import DeploymentOrchestrator
from reconcile_engine.registry.file_store import IacFileStore
from reconcile_engine.registry.service import StackRegistry
from reconcile_engine.render.compose import ComposeRenderer
from reconcile_engine.runtime.agent_runtime import AgentContainerRuntime
from reconcile_engine.runtime.base import RoutedContainerRuntime
from reconcile_engine.runtime.docker_runtime import DockerRuntime
from reconcile_engine.secrets.cipher import SopsCliCipher
from reconcile_engine.secrets.keys import EnvKeyProvider
from reconcile_engine.secrets.resolver import SecretResolver


# ============================================
# SECRETS
# ============================================

key_provider = EnvKeyProvider()

resolver = SecretResolver(
    key_provider=key_provider,
    cipher=SopsCliCipher(
        binary=settings.sops_binary,
        age_recipients=settings.sops_age_recipients,
        timeout=settings.sops_timeout,
    ),
)

hasher = ConfigHasher()


# ============================================
# REPOSITORIES
# ============================================

stack_repository = SqlStackRepository()

file_store = IacFileStore(settings.iac_base)


# ============================================
# RUNTIME
# ============================================

local_host = settings.local_host or socket.gethostname()

agent_runtime = AgentContainerRuntime.from_urls(settings.runtime_agents)

runtime = RoutedContainerRuntime(
    routes={
        **{host: agent_runtime for host in settings.runtime_agents},
        local_host: DockerRuntime(hasher=hasher),
    },
)


# ============================================
# EVENTS
# ============================================

emitters = MultiEventEmitter([
    LoggingEventEmitter()
])


# ============================================
# SERVICES
# ============================================

registry = StackRegistry(
    repository=stack_repository,
    file_store=file_store,
    resolver=resolver,
    env_default=settings.devops_apply,
)

renderer = ComposeRenderer(registry=registry, resolver=resolver, hasher=hasher)

orchestrator = DeploymentOrchestrator(
    registry=registry,
    renderer=renderer,
    applier=ComposeCliApplier(
        docker_binary=settings.docker_binary,
        timeout=settings.apply_timeout,
        docker_hosts=settings.docker_hosts,
    ),
    hasher=hasher,
    emitters=[emitters],
    scratch_base=settings.builds_dir,
    lock_timeout=settings.deploy_lock_timeout,
)

reconcile_service = ReconcileService(
    registry=registry,
    renderer=renderer,
    detector=DriftDetector(hasher),
    orchestrator=orchestrator,
    runtime=runtime,
    cache=DriftCache(),
    hasher=hasher,
)
