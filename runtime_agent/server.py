# runtime_agent/server.py
"""
Runtime Agent - Runs on managed hosts.
Reports the local Docker daemon's containers to the reconcile engine.
"""

import logging
from typing import Any, Dict, List, Optional

import docker
from docker.errors import DockerException
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from reconcile_engine.core.hashing import ConfigHasher
from reconcile_engine.runtime.base import RuntimeUnavailable
from reconcile_engine.runtime.docker_runtime import DockerRuntime
from reconcile_engine.runtime.inspect import container_to_dict

logger = logging.getLogger(__name__)


# ============================================
# RESPONSE MODELS
# ============================================

class ContainerInfo(BaseModel):
    """One container, with the fields drift detection hashes."""
    name: str
    state: str
    image: str
    compose_project: Optional[str] = None
    compose_service: Optional[str] = None
    ip: Optional[str] = None
    ports: List[str] = Field(default_factory=list)
    created: Optional[str] = None
    owner: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    volumes: List[str] = Field(default_factory=list)
    command: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    config_hash: Optional[str] = None


class ContainerListResponse(BaseModel):
    host: str
    containers: List[ContainerInfo]


# ============================================
# APP
# ============================================

def create_app(docker_client=None, host_name: str = "") -> FastAPI:
    """Build the agent app; docker_client defaults to docker.from_env()."""
    app = FastAPI(
        title="Runtime Agent",
        description="Container inventory agent for the reconcile engine",
        version="1.0.0"
    )

    if docker_client is None:
        try:
            docker_client = docker.from_env()
            logger.info("Connected to Docker daemon")
        except DockerException as e:
            logger.error(f"Failed to connect to Docker: {e}")
            docker_client = None

    runtime = DockerRuntime(client=docker_client, hasher=ConfigHasher()) if docker_client else None

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Health check endpoint."""
        if docker_client is None:
            raise HTTPException(status_code=503, detail="Docker not available")

        try:
            docker_client.ping()
        except DockerException as e:
            raise HTTPException(status_code=503, detail=f"Docker not responding: {e}")

        return {
            "status": "healthy",
            "docker_connected": True
        }

    @app.get("/containers", response_model=ContainerListResponse)
    async def list_containers():
        """All containers, running or stopped."""
        if runtime is None:
            raise HTTPException(status_code=503, detail="Docker not available")

        try:
            containers = runtime.list_containers(host_name)
        except RuntimeUnavailable as e:
            logger.error(f"Failed to list containers: {e}")
            raise HTTPException(status_code=502, detail=str(e))

        return ContainerListResponse(
            host=host_name,
            containers=[ContainerInfo(**container_to_dict(c)) for c in containers],
        )

    return app


if __name__ == "__main__":
    import socket

    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("Starting Runtime Agent on 0.0.0.0:9000")

    uvicorn.run(
        create_app(host_name=socket.gethostname()),
        host="0.0.0.0",
        port=9000,
        log_level="info"
    )
