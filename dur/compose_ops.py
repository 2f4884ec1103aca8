from __future__ import annotations

import json
import os
import shlex
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

from .errors import ComposeError
from .settings import settings


class Compose:
    """Thin wrapper over the ``docker compose`` CLI for one project.

    Image overrides are written to a temporary overlay file that is layered
    on top of the project's own files and removed again on every exit path.
    """

    def __init__(
        self,
        config_files: Sequence[str],
        working_dir: str,
        project: str | None = None,
        command: str | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        if not config_files:
            raise ValueError("At least one compose file is required.")
        self.config_files = list(config_files)
        self.working_dir = working_dir
        self.project = project
        self.command = shlex.split(command or settings.compose_cmd)
        self._run = runner

    def _base(self, overlay: Sequence[str] = ()) -> list[str]:
        cmd = list(self.command)
        if self.project:
            cmd += ["-p", self.project]
        for f in self.config_files:
            cmd += ["-f", f]
        for f in overlay:
            cmd += ["-f", f]
        return cmd

    def _exec(self, args: list[str], overlay: Sequence[str] = ()) -> str:
        cmd = self._base(overlay) + args
        try:
            proc = self._run(cmd, cwd=self.working_dir, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or e.stdout or "").strip()
            raise ComposeError(f"'{' '.join(cmd)}' exited with {e.returncode}: {detail}") from e
        except OSError as e:
            raise ComposeError(f"Could not run '{cmd[0]}': {e}") from e
        return proc.stdout or ""

    @contextmanager
    def _overlay(self, service: str, image: str | None) -> Iterator[list[str]]:
        if image is None:
            yield []
            return
        fd, path = tempfile.mkstemp(prefix="dur-override-", suffix=".yml")
        try:
            # JSON is valid YAML, so compose reads this like any other file.
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"services": {service: {"image": image}}}, fh)
            yield [path]
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    def services(self) -> list[str]:
        out = self._exec(["config", "--services"])
        return [line.strip() for line in out.splitlines() if line.strip()]

    def config(self) -> dict[str, Any]:
        out = self._exec(["config", "--format", "json"])
        try:
            return json.loads(out)
        except ValueError as e:
            raise ComposeError(f"Unreadable compose config output: {e}") from e

    def declared_image(self, service: str) -> str | None:
        """Image the service declares, None for build-only services.

        Raises KeyError if the service is not declared at all.
        """
        services = self.config().get("services") or {}
        if service not in services:
            raise KeyError(service)
        return (services[service] or {}).get("image")

    def pull(self, service: str, image: str | None = None) -> None:
        with self._overlay(service, image) as overlay:
            self._exec(["pull", service], overlay)

    def up(self, service: str, image: str | None = None) -> None:
        with self._overlay(service, image) as overlay:
            self._exec(["up", "-d", "--force-recreate", "--no-deps", service], overlay)

    def container_ids(self, service: str, include_stopped: bool = False) -> list[str]:
        args = ["ps", "-q"]
        if include_stopped:
            args.append("-a")
        out = self._exec(args + [service])
        return [line.strip() for line in out.splitlines() if line.strip()]
