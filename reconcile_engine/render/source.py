# reconcile_engine/render/source.py
"""
Render sources: full ("enhanced") renders and name/image-only ("basic") ones.

Business logic never branches on which one it got; normalize_source turns
either into a RenderedServiceSet whose `enhanced` flag tells the detector
whether config hashes are available.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from reconcile_engine.core.models import RenderedService, RenderedServiceSet, StackKey


@dataclass(frozen=True)
class Enhanced:
    rendered: RenderedServiceSet


@dataclass(frozen=True)
class BasicService:
    service_name: str
    image: str
    container_name: str
    explicit_container_name: bool = False


@dataclass(frozen=True)
class Basic:
    stack: StackKey
    project_label: str
    services: Tuple[BasicService, ...]
    reason: str
    bundle_hash: str = ""
    pull_policy: Optional[str] = None


RenderSource = Union[Enhanced, Basic]


def normalize_source(source: RenderSource) -> RenderedServiceSet:
    if isinstance(source, Enhanced):
        return source.rendered

    if isinstance(source, Basic):
        return RenderedServiceSet(
            stack=source.stack,
            project_label=source.project_label,
            services=[
                RenderedService(
                    service_name=s.service_name,
                    image=s.image,
                    container_name=s.container_name,
                    explicit_container_name=s.explicit_container_name,
                    config_hash=None,
                )
                for s in source.services
            ],
            warnings=[source.reason] if source.reason else [],
            bundle_hash=source.bundle_hash,
            pull_policy=source.pull_policy,
            enhanced=False,
        )

    raise TypeError(f"Unknown render source: {type(source).__name__}")
