# reconcile_engine/orchestrator/applier.py
"""
Compose Applier - runs `docker compose up` for a staged compose document and
streams its output line by line.
"""

import logging
import os
import queue
import re
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Union

from reconcile_engine.core.logging_setup import redact
from reconcile_engine.core.models import StackKey

logger = logging.getLogger(__name__)

PULL_FLAGS = {
    "always": "always",
    "missing": "missing",
    "if_not_present": "missing",
    "never": "never",
    "build": "build",
}

# " ✔ Container myproj-web-1  Started" / "Container myproj-db-1  Error"
_CONTAINER_LINE = re.compile(r"Container\s+(?P<name>[A-Za-z0-9][A-Za-z0-9_.-]*)\s+(?P<status>[A-Za-z]+)")


@dataclass
class ApplyRequest:
    stack: StackKey
    host: str
    project_label: str
    project_dir: str
    compose_file: str
    pull_policy: Optional[str] = None
    # container_name -> service_name, to attribute progress lines
    containers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ApplyLine:
    stream: str
    text: str


@dataclass
class ApplyOutcome:
    """Always the last item yielded by an applier."""

    exit_code: int
    cancelled: bool = False
    timed_out: bool = False
    service_results: Dict[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None


ApplyItem = Union[ApplyLine, ApplyOutcome]


def parse_service_status(line: str, containers: Dict[str, str]) -> Optional[tuple]:
    """(service_name, status) for compose progress lines about a known container."""
    match = _CONTAINER_LINE.search(line)
    if not match:
        return None
    name = match.group("name")
    service = containers.get(name)
    if service is None:
        return None
    return service, match.group("status")


class ComposeApplier(ABC):
    @abstractmethod
    def apply(
        self,
        request: ApplyRequest,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[ApplyItem]:
        """Yield ApplyLine items while running, then exactly one ApplyOutcome."""
        pass


class ComposeCliApplier(ComposeApplier):
    """docker compose CLI, with an optional DOCKER_HOST per managed host."""

    POLL_INTERVAL = 0.2

    def __init__(
        self,
        docker_binary: str = "docker",
        timeout: float = 1800,
        docker_hosts: Optional[Dict[str, str]] = None,
    ):
        self.docker_binary = docker_binary
        self.timeout = timeout
        self.docker_hosts = docker_hosts or {}

    def build_command(self, request: ApplyRequest) -> List[str]:
        cmd = [
            self.docker_binary, "compose",
            "-p", request.project_label,
            "--project-directory", request.project_dir,
            "-f", request.compose_file,
            "up", "-d", "--remove-orphans",
        ]
        pull = PULL_FLAGS.get((request.pull_policy or "").lower())
        if pull:
            cmd += ["--pull", pull]
        return cmd

    def _environment(self, host: str) -> Dict[str, str]:
        env = dict(os.environ)
        # The compose file is fully resolved; never hand the key to docker
        env.pop("SOPS_AGE_KEY", None)
        env.pop("SOPS_AGE_KEY_FILE", None)
        docker_host = self.docker_hosts.get(host)
        if docker_host:
            env["DOCKER_HOST"] = docker_host
        return env

    def apply(
        self,
        request: ApplyRequest,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[ApplyItem]:
        cmd = self.build_command(request)
        logger.info(f"[apply] {request.stack}: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                cwd=request.project_dir if os.path.isdir(request.project_dir) else None,
                env=self._environment(request.host),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            yield ApplyOutcome(exit_code=127, last_error=f"failed to start docker compose: {e}")
            return

        lines: "queue.Queue" = queue.Queue()
        readers = [
            threading.Thread(target=_pump, args=(process.stdout, "stdout", lines), daemon=True),
            threading.Thread(target=_pump, args=(process.stderr, "stderr", lines), daemon=True),
        ]
        for t in readers:
            t.start()

        results: Dict[str, str] = {}
        last_error: Optional[str] = None
        cancelled = timed_out = False
        deadline = time.monotonic() + self.timeout if self.timeout else None
        open_streams = len(readers)

        try:
            while open_streams:
                if cancel is not None and cancel.is_set() and not cancelled:
                    cancelled = True
                    logger.warning(f"[apply] {request.stack}: cancelled, terminating docker compose")
                    process.terminate()
                if deadline is not None and time.monotonic() > deadline and not timed_out:
                    timed_out = True
                    logger.error(f"[apply] {request.stack}: timed out after {self.timeout}s")
                    process.kill()

                try:
                    stream, text = lines.get(timeout=self.POLL_INTERVAL)
                except queue.Empty:
                    continue
                if text is None:
                    open_streams -= 1
                    continue

                text = redact(text.rstrip("\n"))
                if not text:
                    continue

                status = parse_service_status(text, request.containers)
                if status:
                    results[status[0]] = status[1]
                if (status and status[1].lower() == "error") or text.lower().startswith("error"):
                    last_error = text

                yield ApplyLine(stream=stream, text=text)
        finally:
            # Consumer went away mid-stream
            if open_streams and process.poll() is None:
                process.kill()

        exit_code = process.wait()
        for t in readers:
            t.join(timeout=1)

        if timed_out:
            last_error = f"docker compose timed out after {self.timeout}s"
        elif cancelled:
            last_error = "deploy cancelled"

        yield ApplyOutcome(
            exit_code=exit_code,
            cancelled=cancelled,
            timed_out=timed_out,
            service_results=results,
            last_error=last_error,
        )


def _pump(pipe, stream: str, out: "queue.Queue") -> None:
    try:
        for line in iter(pipe.readline, ""):
            out.put((stream, line))
    finally:
        pipe.close()
        out.put((stream, None))
