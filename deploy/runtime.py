"""
Container runtime control through the docker CLI.

ContainerRuntime is the seam the controllers depend on; DockerRuntime is the
production implementation and tests substitute an in-memory one.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

from deploy.errors import CommandFailed

logger = logging.getLogger(__name__)


class UnitState(Enum):
    MISSING = "missing"
    STOPPED = "stopped"
    RUNNING = "running"


def run_command(cmd, timeout: int = 30, check: bool = True, cwd=None) -> subprocess.CompletedProcess:
    if isinstance(cmd, str):
        cmd_list = cmd.split()
        cmd_str = cmd
    else:
        cmd_list = list(cmd)
        cmd_str = " ".join(cmd_list)

    logger.debug(f"  $ {cmd_str}")
    try:
        result = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandFailed(f"Command timed out after {timeout}s: {cmd_str}") from e
    except FileNotFoundError as e:
        raise CommandFailed(f"Command not found: {cmd_list[0]}") from e

    if check and result.returncode != 0:
        logger.debug(f"  Command failed (rc={result.returncode}): {result.stderr.strip()}")
        raise CommandFailed(
            f"Command failed: {cmd_str}\nstderr: {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


class ContainerRuntime(ABC):
    @abstractmethod
    def unit_state(self, name: str) -> UnitState: ...

    @abstractmethod
    def launch(self, name: str, artifact: str, host_port: int) -> None: ...

    @abstractmethod
    def start(self, name: str) -> None: ...

    @abstractmethod
    def stop(self, name: str, grace_seconds: int) -> None: ...

    @abstractmethod
    def remove(self, name: str, force: bool = False) -> None: ...

    @abstractmethod
    def logs(self, name: str, tail: int) -> str: ...

    def prune_images(self) -> None:
        """Optional housekeeping; runtimes without an image cache ignore it."""


class DockerRuntime(ContainerRuntime):
    def __init__(
        self,
        container_port: int = 3402,
        bind_host: str = "127.0.0.1",
        env_file: str = "",
        volumes: list[str] | None = None,
        restart_policy: str = "unless-stopped",
        command_timeout: int = 60,
        runner=run_command,
    ):
        self.container_port = container_port
        self.bind_host = bind_host
        self.env_file = env_file
        self.volumes = list(volumes or [])
        self.restart_policy = restart_policy
        self.command_timeout = command_timeout
        self.runner = runner

    @classmethod
    def from_settings(cls, s) -> "DockerRuntime":
        return cls(
            container_port=s.CONTAINER_PORT,
            bind_host=s.BIND_HOST,
            env_file=s.RUN_ENV_FILE,
            volumes=s.RUN_VOLUMES,
            restart_policy=s.RESTART_POLICY,
            command_timeout=s.COMMAND_TIMEOUT,
        )

    def unit_state(self, name: str) -> UnitState:
        result = self.runner(
            ["docker", "inspect", "--format", "{{.State.Running}}", name],
            timeout=self.command_timeout,
            check=False,
        )
        if result.returncode != 0:
            return UnitState.MISSING
        if result.stdout.strip().strip("'") == "true":
            return UnitState.RUNNING
        return UnitState.STOPPED

    def launch(self, name: str, artifact: str, host_port: int) -> None:
        cmd = [
            "docker", "run", "-d",
            "--name", name,
            "-p", f"{self.bind_host}:{host_port}:{self.container_port}",
        ]
        if self.env_file:
            cmd += ["--env-file", self.env_file]
        for volume in self.volumes:
            cmd += ["-v", volume]
        if self.restart_policy:
            cmd += ["--restart", self.restart_policy]
        cmd.append(artifact)
        self.runner(cmd, timeout=self.command_timeout)

    def start(self, name: str) -> None:
        self.runner(["docker", "start", name], timeout=self.command_timeout)

    def stop(self, name: str, grace_seconds: int) -> None:
        # docker waits the full grace period before SIGKILL
        self.runner(
            ["docker", "stop", "--time", str(grace_seconds), name],
            timeout=self.command_timeout + grace_seconds,
        )

    def remove(self, name: str, force: bool = False) -> None:
        cmd = ["docker", "rm"]
        if force:
            cmd.append("-f")
        cmd.append(name)
        self.runner(cmd, timeout=self.command_timeout)

    def logs(self, name: str, tail: int) -> str:
        result = self.runner(
            ["docker", "logs", "--tail", str(tail), name],
            timeout=self.command_timeout,
            check=False,
        )
        # containers write to both streams; docker logs replays them separately
        return (result.stdout + result.stderr).strip()

    def prune_images(self) -> None:
        self.runner(["docker", "image", "prune", "-f"], timeout=self.command_timeout)


class ArtifactBuilder:
    """Builds the service image from a git checkout, tagged with the short commit SHA."""

    def __init__(
        self,
        repo_dir: str = ".",
        image_prefix: str = "gateway",
        git_pull: bool = True,
        build_timeout: int = 900,
        runner=run_command,
    ):
        self.repo_dir = Path(repo_dir).resolve()
        self.image_prefix = image_prefix
        self.git_pull = git_pull
        self.build_timeout = build_timeout
        self.runner = runner

    @classmethod
    def from_settings(cls, s) -> "ArtifactBuilder":
        return cls(
            repo_dir=s.REPO_DIR,
            image_prefix=s.IMAGE_PREFIX,
            git_pull=s.GIT_PULL,
            build_timeout=s.BUILD_TIMEOUT,
        )

    def build(self) -> str:
        cwd = str(self.repo_dir)
        if self.git_pull:
            branch = self.runner(
                ["git", "rev-parse", "--abbrev-ref", "HEAD"], timeout=10, cwd=cwd
            ).stdout.strip()
            logger.info(f"Pulling latest code ({branch})...")
            self.runner(["git", "pull", "origin", branch], timeout=120, cwd=cwd)

        sha = self.runner(["git", "rev-parse", "--short", "HEAD"], timeout=10, cwd=cwd).stdout.strip()
        image = f"{self.image_prefix}:{sha}"
        logger.info(f"Building image {image}...", extra={"artifact": image})
        self.runner(["docker", "build", "-t", image, cwd], timeout=self.build_timeout, cwd=cwd)
        return image
