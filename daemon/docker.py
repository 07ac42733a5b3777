"""Container runtime boundary: list, start and stop containers via the docker CLI.

Each call is a single CLI invocation with its own timeout. Failures and
timeouts raise ExternalToolError, which the dispatcher reports as a
negative ack.
"""

import asyncio
import json
import logging
import re
import subprocess

from core.errors import ExternalToolError
from core.models import DockerContainer, PortBinding

LIST_TIMEOUT = 8
CONTROL_TIMEOUT = 15

_PORT_BINDING_RE = re.compile(r"(?:0\.0\.0\.0|::):(\d+)->(\d+)/(tcp|udp)")

log = logging.getLogger("devdock.docker")


def parse_port_bindings(ports: str) -> list[PortBinding]:
    """Parse the `Ports` column of `docker ps`, e.g. "0.0.0.0:5432->5432/tcp, :::5432->5432/tcp"."""
    bindings = []
    for part in ports.split(", "):
        m = _PORT_BINDING_RE.search(part)
        if m:
            bindings.append(PortBinding(int(m.group(1)), int(m.group(2)), m.group(3)))
    return bindings


def parse_container(line: str) -> DockerContainer:
    """One `docker ps --format '{{json .}}'` line."""
    data = json.loads(line)
    return DockerContainer(
        id=data["ID"],
        name=str(data.get("Names", "")).lstrip("/"),
        image=data.get("Image", ""),
        state=data.get("State", ""),
        status=data.get("Status", ""),
        running_for=data.get("RunningFor", ""),
        ports=parse_port_bindings(data.get("Ports") or ""),
    )


def _run_docker(args: list[str], timeout: int) -> str:
    try:
        result = subprocess.run(
            ["docker", *args], capture_output=True, text=True, timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ExternalToolError("docker CLI not found") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(f"docker {args[0]} timed out after {timeout}s") from e
    if result.returncode != 0:
        err = result.stderr.strip() or f"exit code {result.returncode}"
        raise ExternalToolError(f"docker {args[0]} failed: {err}")
    return result.stdout


async def list_containers() -> list[DockerContainer]:
    out = await asyncio.to_thread(
        _run_docker, ["ps", "--all", "--format", "{{json .}}"], LIST_TIMEOUT,
    )
    containers = []
    for line in out.splitlines():
        if not line.strip():
            continue
        try:
            containers.append(parse_container(line))
        except (json.JSONDecodeError, KeyError) as e:
            log.warning(f"Unparseable docker ps line: {e}")
    return containers


async def start_container(container_id: str) -> None:
    await asyncio.to_thread(_run_docker, ["start", container_id], CONTROL_TIMEOUT)
    log.info(f"Started container {container_id}")


async def stop_container(container_id: str) -> None:
    await asyncio.to_thread(_run_docker, ["stop", container_id], CONTROL_TIMEOUT)
    log.info(f"Stopped container {container_id}")
