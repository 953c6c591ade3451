# reconcile_engine/render/compose.py
"""
Compose Renderer - turns a stack's compose + env files into desired services.

Environment precedence, least specific first:
    global vars -> group vars -> host vars -> stack env files
    -> service env_file entries -> service environment:
The first four layers feed ${VAR} interpolation; the last two make up each
service's effective environment.
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

import yaml

from reconcile_engine.core.errors import (
    DecryptionError,
    InterpolationError,
    RenderError,
)
from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.core.models import (
    FileRole,
    RenderedService,
    RenderedServiceSet,
    ScopeKind,
    StackKey,
    StackSnapshot,
)
from reconcile_engine.core.sanitize import sanitize_project_label
from reconcile_engine.registry.service import StackRegistry
from reconcile_engine.render.normalize import (
    normalize_command,
    normalize_env_files,
    normalize_environment,
    normalize_ports,
    normalize_volumes,
)
from reconcile_engine.render.source import Basic, BasicService, Enhanced, RenderSource
from reconcile_engine.secrets.dotenv import ENC_MARKER, detect_format
from reconcile_engine.secrets.resolver import SecretResolver

logger = logging.getLogger(__name__)

PRIMARY_COMPOSE_NAMES = (
    "compose.yaml",
    "compose.yml",
    "docker-compose.yaml",
    "docker-compose.yml",
)

# Sequences that compose merges by appending across override files
APPENDED_KEYS = ("ports", "volumes", "expose", "env_file", "dns", "extra_hosts")


def default_container_name(project_label: str, service_name: str, index: int = 1) -> str:
    """Compose V2 naming; legacy V1 used '_' as separator."""
    return f"{project_label}-{service_name}-{index}"


def _clean_rel(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def _compose_order(rel_path: str) -> Tuple[int, str]:
    name = rel_path.rsplit("/", 1)[-1].lower()
    if name in PRIMARY_COMPOSE_NAMES:
        return (PRIMARY_COMPOSE_NAMES.index(name), rel_path)
    return (len(PRIMARY_COMPOSE_NAMES), rel_path)


def _yaml_error(rel_path: str, e: yaml.YAMLError) -> str:
    # Never echo document content; it may be decrypted
    mark = getattr(e, "problem_mark", None)
    problem = getattr(e, "problem", None) or "invalid YAML"
    where = f" at line {mark.line + 1}" if mark is not None else ""
    return f"{rel_path}: {problem}{where}"


def _escape_dollars(node: Any) -> Any:
    """Staged documents are already interpolated; keep compose from doing it again."""
    if isinstance(node, str):
        return node.replace("$", "$$")
    if isinstance(node, dict):
        return {k: _escape_dollars(v) for k, v in node.items()}
    if isinstance(node, list):
        return [_escape_dollars(v) for v in node]
    return node


def _contains_ciphertext(values) -> bool:
    for v in values:
        if v and ENC_MARKER in v:
            return True
    return False


def _merge_service(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if key == "environment" and current is not None:
            env = normalize_environment(current)
            env.update(normalize_environment(value))
            merged[key] = env
        elif key in APPENDED_KEYS and isinstance(current, list) and isinstance(value, list):
            merged[key] = current + [v for v in value if v not in current]
        elif isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge_service(current, value)
        else:
            merged[key] = value
    return merged


def merge_documents(documents: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge compose files in order; later files override earlier ones."""
    result: Dict[str, Any] = {}
    for doc in documents:
        for key, value in doc.items():
            if key == "services":
                services = result.setdefault("services", {})
                for name, svc in (value or {}).items():
                    svc = svc or {}
                    services[name] = _merge_service(services[name], svc) if name in services else svc
            elif isinstance(result.get(key), dict) and isinstance(value, dict):
                result[key] = {**result[key], **value}
            else:
                result[key] = value
    return result


class ComposeRenderer:
    """Renders stacks from consistent registry snapshots."""

    def __init__(
        self,
        registry: StackRegistry,
        resolver: SecretResolver,
        hasher: Optional[ConfigHasher] = None,
    ):
        self._registry = registry
        self._resolver = resolver
        self._hasher = hasher or ConfigHasher()

    # -------------------------
    # PUBLIC
    # -------------------------

    def render(
        self,
        key: StackKey,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> RenderedServiceSet:
        return self.render_snapshot(self._registry.snapshot(key), cancel=cancel)

    def render_source(
        self,
        key: StackKey,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> RenderSource:
        """
        Full render when possible. When secrets cannot be resolved, fall back
        to a basic source listing service names and images only.
        """
        return self.source_for_snapshot(self._registry.snapshot(key), cancel=cancel)

    def source_for_snapshot(
        self,
        snapshot: StackSnapshot,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> RenderSource:
        try:
            return Enhanced(self.render_snapshot(snapshot, cancel=cancel))
        except RenderError as e:
            if e.kind != RenderError.RESOLVE:
                raise
            basic = self.basic_source(snapshot, reason=e.cause)
            if basic is None:
                raise
            return basic

    def render_snapshot(
        self,
        snapshot: StackSnapshot,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> RenderedServiceSet:
        key = snapshot.stack.key
        label = sanitize_project_label(key.stack_name)

        raw_docs = self._load_compose_documents(snapshot, cancel)
        referenced = self._referenced_env_files(raw_docs)

        interp_env = self._interpolation_env(snapshot, referenced, cancel)

        warnings: List[str] = []
        unresolved: List[str] = []
        try:
            docs = [
                self._resolver.interpolate_tree(doc, interp_env, warnings, unresolved)
                for _, doc in raw_docs
            ]
        except InterpolationError as e:
            raise RenderError(str(key), str(e), RenderError.RESOLVE) from None

        if unresolved:
            raise RenderError(
                str(key),
                f"unresolved interpolation tokens: {', '.join(sorted(set(unresolved)))}",
                RenderError.RESOLVE,
            )

        merged = merge_documents(docs)
        services_doc = merged.get("services")
        if not isinstance(services_doc, dict) or not services_doc:
            raise RenderError(str(key), "compose file declares no services", RenderError.PARSE)

        top_pull_policy = merged.get("x-pull-policy") or snapshot.stack.pull_policy
        project_dir = self._registry.file_store.stack_dir(key)

        services: List[RenderedService] = []
        staged_services: Dict[str, Any] = {}
        env_cache: Dict[str, Dict[str, str]] = {}

        for name, svc in services_doc.items():
            if not isinstance(svc, dict):
                raise RenderError(str(key), f"service {name}: definition must be a mapping", RenderError.PARSE)

            rendered, staged = self._render_service(
                key, label, name, svc, snapshot, interp_env, env_cache,
                project_dir, top_pull_policy, cancel,
            )
            services.append(rendered)
            staged_services[name] = staged

        document = {k: v for k, v in merged.items() if k != "services"}
        document["services"] = staged_services

        for w in warnings:
            logger.warning(f"[render] {key}: {w}")

        logger.debug(f"[render] {key}: {len(services)} services, bundle={snapshot.bundle_hash[:12]}")

        return RenderedServiceSet(
            stack=key,
            project_label=label,
            services=services,
            warnings=warnings,
            bundle_hash=snapshot.bundle_hash,
            pull_policy=top_pull_policy,
            enhanced=True,
            document=_escape_dollars(document),
        )

    def basic_source(self, snapshot: StackSnapshot, reason: str) -> Optional[Basic]:
        """Names and images straight from plaintext compose files, no secrets needed."""
        key = snapshot.stack.key
        label = sanitize_project_label(key.stack_name)

        docs = []
        for f in sorted(snapshot.by_role(FileRole.COMPOSE), key=lambda f: _compose_order(f.rel_path)):
            if f.sops:
                return None
            try:
                doc = yaml.safe_load(f.text())
            except yaml.YAMLError:
                return None
            if isinstance(doc, dict):
                docs.append(doc)

        services_doc = merge_documents(docs).get("services") or {}
        if not services_doc:
            return None

        services = []
        for name, svc in services_doc.items():
            svc = svc if isinstance(svc, dict) else {}
            explicit = svc.get("container_name")
            services.append(BasicService(
                service_name=name,
                image=str(svc.get("image") or ""),
                container_name=str(explicit) if explicit else default_container_name(label, name),
                explicit_container_name=bool(explicit),
            ))

        return Basic(
            stack=key,
            project_label=label,
            services=tuple(services),
            reason=f"enhanced data unavailable: {reason}",
            bundle_hash=snapshot.bundle_hash,
        )

    # -------------------------
    # INTERNALS
    # -------------------------

    def _decrypt(self, key: StackKey, text: str, rel_path: str, cancel) -> str:
        try:
            return self._resolver.decrypt(text, detect_format(rel_path), name=rel_path, cancel=cancel)
        except DecryptionError as e:
            raise RenderError(str(key), str(e), RenderError.RESOLVE) from None

    def _load_env(self, key: StackKey, snapshot: StackSnapshot, rel_path: str, cache, cancel) -> Dict[str, str]:
        if rel_path in cache:
            return cache[rel_path]
        f = snapshot.find(rel_path)
        if f is None:
            raise RenderError(str(key), f"env file {rel_path} not found", RenderError.PARSE)
        try:
            values = self._resolver.load_env_file(f.text(), name=rel_path, cancel=cancel)
        except DecryptionError as e:
            raise RenderError(str(key), str(e), RenderError.RESOLVE) from None
        cache[rel_path] = values
        return values

    def _load_compose_documents(self, snapshot: StackSnapshot, cancel) -> List[Tuple[str, Dict[str, Any]]]:
        key = snapshot.stack.key
        compose_files = sorted(snapshot.by_role(FileRole.COMPOSE), key=lambda f: _compose_order(f.rel_path))
        if not compose_files:
            raise RenderError(str(key), "no compose file", RenderError.PARSE)

        docs = []
        for f in compose_files:
            text = self._decrypt(key, f.text(), f.rel_path, cancel)
            try:
                doc = yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise RenderError(str(key), _yaml_error(f.rel_path, e), RenderError.PARSE) from None
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise RenderError(str(key), f"{f.rel_path}: top level must be a mapping", RenderError.PARSE)
            doc.pop("sops", None)
            docs.append((f.rel_path, doc))
        return docs

    @staticmethod
    def _referenced_env_files(docs: List[Tuple[str, Dict[str, Any]]]) -> set:
        referenced = set()
        for _, doc in docs:
            for svc in (doc.get("services") or {}).values():
                if isinstance(svc, dict):
                    referenced.update(_clean_rel(p) for p in normalize_env_files(svc.get("env_file")))
        return referenced

    def scope_variables(self, key: StackKey) -> Dict[str, str]:
        """Global, group and host variables merged for the stack's scope."""
        repo = self._registry.repository

        env: Dict[str, str] = {}
        env.update(repo.get_variables("global"))

        if key.scope_kind == ScopeKind.HOST:
            for group in repo.get_host_groups(key.scope_name):
                env.update(repo.get_variables("group", group))
            env.update(repo.get_variables("host", key.scope_name))
        else:
            env.update(repo.get_variables("group", key.scope_name))
        return env

    def _interpolation_env(self, snapshot: StackSnapshot, referenced: set, cancel) -> Dict[str, str]:
        key = snapshot.stack.key
        env = self.scope_variables(key)

        stack_env_files = sorted(
            (f.rel_path for f in snapshot.by_role(FileRole.ENV) if f.rel_path not in referenced),
            key=lambda p: (p != ".env", p),
        )
        cache: Dict[str, Dict[str, str]] = {}
        for rel_path in stack_env_files:
            env.update(self._load_env(key, snapshot, rel_path, cache, cancel))
        return env

    def _render_service(
        self,
        key: StackKey,
        label: str,
        name: str,
        svc: Dict[str, Any],
        snapshot: StackSnapshot,
        interp_env: Dict[str, str],
        env_cache: Dict[str, Dict[str, str]],
        project_dir: str,
        top_pull_policy: Optional[str],
        cancel,
    ) -> Tuple[RenderedService, Dict[str, Any]]:
        image = svc.get("image")
        if not image:
            if "build" not in svc:
                raise RenderError(str(key), f"service {name}: no image or build", RenderError.PARSE)
            # Compose tags built images <project>-<service>
            image = f"{label}-{name}"
        image = str(image).strip()

        env: Dict[str, str] = {}
        for rel_path in normalize_env_files(svc.get("env_file")):
            env.update(self._load_env(key, snapshot, _clean_rel(rel_path), env_cache, cancel))
        env.update(normalize_environment(svc.get("environment"), fallback=interp_env))

        explicit = svc.get("container_name")
        container_name = str(explicit).strip() if explicit else default_container_name(label, name)

        ports = normalize_ports(svc.get("ports"))
        volumes = normalize_volumes(svc.get("volumes"), project_dir)
        command = normalize_command(svc.get("command"))
        entrypoint = normalize_command(svc.get("entrypoint"))

        fields = [image, container_name, *env.values(), *ports, *volumes, *(command or ()), *(entrypoint or ())]
        if _contains_ciphertext(fields):
            raise RenderError(
                str(key), f"service {name}: encrypted value left after decryption", RenderError.RESOLVE
            )

        rendered = RenderedService(
            service_name=name,
            image=image,
            container_name=container_name,
            explicit_container_name=bool(explicit),
            env=env,
            ports=ports,
            volumes=volumes,
            command=command,
            entrypoint=entrypoint,
            pull_policy=svc.get("pull_policy") or top_pull_policy,
        )
        rendered.config_hash = self._hasher.hash_service(rendered)

        staged = copy.deepcopy(svc)
        staged.pop("env_file", None)
        if env:
            staged["environment"] = dict(env)
        if volumes and isinstance(staged.get("volumes"), list):
            staged["volumes"] = self._absolute_volume_entries(staged["volumes"], volumes)

        return rendered, staged

    @staticmethod
    def _absolute_volume_entries(entries: List[Any], normalized: Tuple[str, ...]) -> List[Any]:
        """Staged files live in scratch; relative bind sources must point at the stack dir."""
        result = []
        for entry, norm in zip(entries, normalized):
            if isinstance(entry, dict):
                if entry.get("type") == "bind" and str(entry.get("source", "")).startswith("."):
                    entry = {**entry, "source": norm.split(":", 1)[0]}
                result.append(entry)
            elif str(entry).startswith("."):
                result.append(norm)
            else:
                result.append(entry)
        return result
