#tests\conftest.py

"""Pytest configuration and fixtures."""

import base64
import re
import threading

import pytest

from reconcile_engine.core.errors import DecryptionError
from reconcile_engine.core.events import LoggingEventEmitter
from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.logging_setup import clear_secrets
from reconcile_engine.core.models import RuntimeContainer, ScopeKind, StackKey
from reconcile_engine.core.service import ReconcileService
from reconcile_engine.drift.cache import DriftCache
from reconcile_engine.drift.detector import DriftDetector
from reconcile_engine.infrastructure.memory.repository import InMemoryStackRepository
from reconcile_engine.infrastructure.postgres.database import (
    create_db_engine,
    get_session_factory,
    init_db,
)
from reconcile_engine.infrastructure.postgres.repository import SqlStackRepository
from reconcile_engine.orchestrator.applier import (
    ApplyLine,
    ApplyOutcome,
    ComposeApplier,
)
from reconcile_engine.orchestrator.deploy import DeploymentOrchestrator
from reconcile_engine.registry.file_store import IacFileStore
from reconcile_engine.registry.service import StackRegistry
from reconcile_engine.render.compose import ComposeRenderer
from reconcile_engine.runtime.base import ContainerRuntime, RuntimeUnavailable
from reconcile_engine.secrets.cipher import SopsCipher
from reconcile_engine.secrets.keys import StaticKeyProvider
from reconcile_engine.secrets.resolver import SecretResolver


FAKE_KEY = "AGE-SECRET-KEY-1TESTKEY"
HOST = "node-1"

_FAKE_TOKEN = re.compile(r"ENC\[fake,([A-Za-z0-9+/=]+)\]")


# ============================================
# FAKES
# ============================================

class FakeCipher(SopsCipher):
    """Wraps the whole document in one ENC[fake,...] token plus sops metadata."""

    def __init__(self, expected_key: str = FAKE_KEY):
        self.expected_key = expected_key
        self.decrypt_calls = 0

    def encrypt(self, data, fmt, *, name=""):
        token = f"ENC[fake,{base64.b64encode(data).decode('ascii')}]"
        if fmt == "dotenv":
            return f"DATA={token}\nsops_version=3.8.1\n".encode("utf-8")
        if fmt == "json":
            return f'{{"data": "{token}", "sops": {{"version": "3.8.1"}}}}'.encode("utf-8")
        return f"data: {token}\nsops:\n  version: 3.8.1\n".encode("utf-8")

    def decrypt(self, data, fmt, private_key, *, name="", cancel=None):
        self.decrypt_calls += 1
        if cancel is not None and cancel.is_set():
            raise DecryptionError(f"{name}: decryption cancelled")
        if private_key != self.expected_key:
            raise DecryptionError(f"{name}: sops exited with status 128")
        match = _FAKE_TOKEN.search(data.decode("utf-8"))
        if match is None:
            raise DecryptionError(f"{name}: sops exited with status 1")
        return base64.b64decode(match.group(1))


class FakeApplier(ComposeApplier):
    """Records requests and replays scripted output."""

    def __init__(self):
        self.requests = []
        self.staged = []
        self.lines = [("stderr", " Container myproj-web-1  Started")]
        self.exit_code = 0
        self.service_results = None
        self.block = None
        self.started = threading.Event()
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def apply(self, request, cancel=None):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.requests.append(request)
            with open(request.compose_file, "r", encoding="utf-8") as f:
                self.staged.append(f.read())
            self.started.set()

            if self.block is not None:
                self.block.wait(timeout=5)

            results = {}
            for stream, text in self.lines:
                for container, service in request.containers.items():
                    if f"Container {container} " in text:
                        results[service] = text.split()[-1]
                yield ApplyLine(stream=stream, text=text)

            cancelled = cancel is not None and cancel.is_set()
            yield ApplyOutcome(
                exit_code=-15 if cancelled else self.exit_code,
                cancelled=cancelled,
                service_results=self.service_results if self.service_results is not None else results,
                last_error="deploy cancelled" if cancelled else (
                    None if self.exit_code == 0 else "Error response from daemon: boom"
                ),
            )
        finally:
            with self._guard:
                self.active -= 1


class FakeRuntime(ContainerRuntime):
    def __init__(self):
        self.containers = {}
        self.unavailable = set()
        self.calls = []

    def list_containers(self, host):
        self.calls.append(host)
        if host in self.unavailable:
            raise RuntimeUnavailable(f"agent for {host} unreachable")
        return list(self.containers.get(host, []))


def running(name, image, project=None, service=None, **fields):
    """RuntimeContainer in the running state."""
    return RuntimeContainer(
        name=name,
        state="running",
        image=image,
        compose_project=project,
        compose_service=service,
        **fields,
    )


def container_like(rendered_service, name=None, project=None, service=None):
    """A running container whose config mirrors a rendered service."""
    return running(
        name or rendered_service.container_name,
        rendered_service.image,
        project=project,
        service=service,
        env=dict(rendered_service.env),
        ports=rendered_service.ports,
        volumes=rendered_service.volumes,
        command=rendered_service.command,
        entrypoint=rendered_service.entrypoint,
    )


# ============================================
# FIXTURES
# ============================================

@pytest.fixture(autouse=True)
def reset_secrets():
    """Redaction registry is process-wide."""
    clear_secrets()
    yield
    clear_secrets()


@pytest.fixture
def hasher():
    return ConfigHasher()


@pytest.fixture
def cipher():
    return FakeCipher()


@pytest.fixture
def resolver(cipher):
    return SecretResolver(StaticKeyProvider(FAKE_KEY), cipher)


@pytest.fixture
def repository():
    return InMemoryStackRepository()


@pytest.fixture
def file_store(tmp_path):
    return IacFileStore(str(tmp_path / "iac"))


@pytest.fixture
def registry(repository, file_store, resolver):
    return StackRegistry(repository, file_store, resolver)


@pytest.fixture
def renderer(registry, resolver, hasher):
    return ComposeRenderer(registry, resolver, hasher)


@pytest.fixture
def detector(hasher):
    return DriftDetector(hasher)


@pytest.fixture
def applier():
    return FakeApplier()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def event_log():
    return LoggingEventEmitter()


@pytest.fixture
def orchestrator(registry, renderer, applier, hasher, event_log, tmp_path):
    return DeploymentOrchestrator(
        registry=registry,
        renderer=renderer,
        applier=applier,
        hasher=hasher,
        emitters=[event_log],
        scratch_base=str(tmp_path / "scratch"),
        lock_timeout=0,
    )


@pytest.fixture
def service(registry, renderer, detector, orchestrator, runtime, hasher):
    return ReconcileService(
        registry=registry,
        renderer=renderer,
        detector=detector,
        orchestrator=orchestrator,
        runtime=runtime,
        cache=DriftCache(),
        hasher=hasher,
    )


@pytest.fixture
def myproj_key():
    return StackKey(ScopeKind.HOST, HOST, "myproj")


MYPROJ_COMPOSE = """\
services:
  web:
    image: nginx:1.25
    ports:
      - "8080:80"
  db:
    image: postgres:15
    environment:
      POSTGRES_PASSWORD: ${DB_PASSWORD}
"""


@pytest.fixture
def myproj(registry, myproj_key):
    """Stack 'myproj' with web (nginx:1.25) and db (postgres:15)."""
    registry.save_file(myproj_key, "docker-compose.yml", MYPROJ_COMPOSE)
    registry.save_file(myproj_key, ".env", "DB_PASSWORD=hunter2-long\n")
    return myproj_key


# ============================================
# SQL
# ============================================

@pytest.fixture
def sql_engine(tmp_path):
    """File-backed SQLite so every session sees the same database."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'reconcile.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_repository(sql_engine):
    return SqlStackRepository(get_session_factory(sql_engine))
