from __future__ import annotations

import os
from typing import Any, Callable, Iterable, Sequence

import docker
from docker.errors import DockerException

from . import db
from .compose_ops import Compose
from .context import WORKING_DIR_LABEL, classify, context_from_labels
from .decision import decide
from .docker_ops import pull_image, remove_container, run_container, stop_container
from .errors import ComposeError, ContainerNotFound, ImageNotFound, PullFailure
from .identity import resolve, resolve_container
from .ledger import Ledger, LogRecord
from .models import Action, Managed, ManagedContext, Standalone, State, TargetResult
from .references import repository_of, with_tag
from .settings import settings


# Container states that do not count as a live instance after `compose up`.
NOT_LIVE = {"created", "exited", "dead", "removing"}

ComposeFactory = Callable[[Sequence[str], str, "str | None"], Compose]


class Reconciler:
    """Brings containers and compose services to a desired image, one target at a time.

    Every target runs the same protocol: inspect, pull, compare, and only
    then stop/remove/start. Nothing destructive happens before the
    replacement image is present locally and its identity is known. Each
    target ends with exactly one ledger record, and a failure on one target
    never stops the next.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        ledger: Ledger,
        compose_factory: ComposeFactory | None = None,
        drift_protection: bool | None = None,
        default_tag: str | None = None,
        stop_timeout_s: int | None = None,
    ):
        self.client = client
        self.ledger = ledger
        self.compose_factory = compose_factory or Compose
        self.drift_protection = settings.drift_protection if drift_protection is None else drift_protection
        self.default_tag = default_tag or settings.default_tag
        self.stop_timeout_s = settings.stop_timeout_s if stop_timeout_s is None else stop_timeout_s
        # At most one destructive cycle per target per invocation.
        self._done: dict[tuple[str, ...], TargetResult] = {}

    # ---- batch entry points -------------------------------------------------

    def update_containers(self, names: Iterable[str], tag: str | None = None) -> list[TargetResult]:
        return [self.update_container(n, tag=tag) for n in names]

    def update_compose_file(
        self, path: str, service: str | None = None, tag: str | None = None, project: str | None = None
    ) -> list[TargetResult]:
        """Update one service, or every declared service, of a compose file.

        Without ``project`` the project name is taken from containers already
        running from this file, so stacks started with ``-p`` are found.

        Raises ComposeError if the file's services cannot be listed.
        """
        path = os.path.abspath(path)
        files = (path,)
        working_dir = os.path.dirname(path)
        project = project or self._running_project(path, working_dir)
        services = [service] if service else self.compose_factory(files, working_dir, project).services()

        results: list[TargetResult] = []
        for svc in services:
            ctx = ManagedContext(config_files=files, working_dir=working_dir, service=svc, project=project)
            result = self.update_service(ctx, tag=tag, skip_imageless=service is None)
            if result is not None:
                results.append(result)
        return results

    # ---- single targets ------------------------------------------------------

    def update_container(
        self,
        name: str,
        tag: str | None = None,
        override: str | None = None,
        alternates: Sequence[str] = (),
    ) -> TargetResult:
        """Update container ``name``, following it into compose if it is compose-managed.

        ``override`` is a full image reference that bypasses drift protection
        (rollback). ``alternates`` are local references tried when the
        override cannot be pulled.
        """
        key = ("container", name)
        if key in self._done:
            return self._done[key]

        db.log_event("INFO", f"Inspecting container '{name}'", target=name)
        try:
            target = classify(self.client, name)
        except ContainerNotFound as e:
            result = self._finish(TargetResult(name=name, action=Action.NOT_FOUND, state=State.FAILED, message=str(e)))
        except Exception as e:
            result = self._finish(
                TargetResult(name=name, action=Action.NOT_FOUND, state=State.FAILED, message=f"Inspect failed: {e}")
            )
        else:
            if isinstance(target, Managed):
                ctx = target.context
                db.log_event(
                    "INFO", f"'{name}' is compose service '{ctx.service}' in {ctx.config_path}", target=name
                )
                result = self.update_service(
                    ctx, tag=tag, override=override, alternates=alternates, current=target.container
                )
            else:
                try:
                    result = self._update_standalone(target, tag, override, alternates)
                except Exception as e:
                    result = self._aborted(name, e)

        self._done[key] = result
        return result

    def _update_standalone(
        self, target: Standalone, tag: str | None, override: str | None, alternates: Sequence[str]
    ) -> TargetResult:
        spec = target.spec
        name = spec.name

        if override is None and spec.image.startswith("sha256:"):
            return self._finish(
                TargetResult(
                    name=name,
                    action=Action.PULL_FAIL,
                    state=State.FAILED,
                    image_reference=spec.image,
                    message="Container runs a bare image id; pass a rollback or recreate it from a named image.",
                )
            )

        repository = None if spec.image.startswith("sha256:") else repository_of(spec.image)
        current = resolve_container(self.client, target.container, repository)
        reference = override or with_tag(spec.image, tag or self.default_tag)

        # INSPECTED -> PULLED
        try:
            reference, pulled = self._acquire(
                reference, lambda: pull_image(self.client, reference), override is not None, alternates
            )
        except (PullFailure, ImageNotFound) as e:
            return self._finish(
                TargetResult(
                    name=name,
                    action=Action.PULL_FAIL,
                    state=State.FAILED,
                    image_reference=reference,
                    message=str(e),
                )
            )

        # PULLED -> COMPARED
        action = decide(pulled, current, has_override=bool(tag or override), drift_detected=False)
        if action.is_skip:
            return self._finish(
                TargetResult(
                    name=name,
                    action=action,
                    state=State.SKIPPED,
                    image_reference=reference,
                    identity=pulled,
                    message=f"'{name}' already runs {pulled}.",
                )
            )

        # COMPARED -> STOPPED -> REMOVED -> STARTED
        state = State.COMPARED
        try:
            db.log_event("INFO", f"Stopping and removing '{name}'", target=name, image=spec.image)
            stop_container(target.container, self.stop_timeout_s)
            state = State.STOPPED
            remove_container(target.container)
            state = State.REMOVED
            run_container(self.client, reference, spec.run_kwargs())
            state = State.STARTED
        except Exception as e:
            degraded = state == State.REMOVED
            return self._finish(
                TargetResult(
                    name=name,
                    action=Action.RECREATE_FAIL,
                    state=State.FAILED,
                    image_reference=spec.image,
                    identity=current,
                    message=(
                        f"Recreate failed after {state.value}: {e}."
                        + (f" '{name}' is gone; relaunch {spec.image} ({current}) manually." if degraded else "")
                    ),
                )
            )

        return self._finish(
            TargetResult(
                name=name,
                action=Action.UPDATE,
                state=State.VERIFIED,
                image_reference=reference,
                identity=pulled,
                message=f"'{name}' moved from {current} to {pulled}.",
            )
        )

    def update_service(
        self,
        ctx: ManagedContext,
        tag: str | None = None,
        override: str | None = None,
        alternates: Sequence[str] = (),
        current: Any = None,
        skip_imageless: bool = False,
    ) -> TargetResult | None:
        """Run the protocol for one compose service.

        Returns None only for an image-less (build-only) service when
        ``skip_imageless`` is set.
        """
        key = ("service", ctx.config_path, ctx.service)
        if key in self._done:
            return self._done[key]
        try:
            result = self._update_service(ctx, tag, override, alternates, current, skip_imageless)
        except Exception as e:
            result = self._aborted(ctx.service, e)
        if result is not None:
            self._done[key] = result
        return result

    def _update_service(
        self,
        ctx: ManagedContext,
        tag: str | None,
        override: str | None,
        alternates: Sequence[str],
        current: Any,
        skip_imageless: bool,
    ) -> TargetResult | None:
        name = ctx.service
        compose = self.compose_factory(ctx.config_files, ctx.working_dir, ctx.project)

        # INSPECTED: declaration, live container and their identities.
        try:
            declared = compose.declared_image(name)
            if current is None:
                ids = compose.container_ids(name, include_stopped=True)
                current = self.client.containers.get(ids[0]) if ids else None
        except KeyError:
            return self._finish(
                TargetResult(
                    name=name,
                    action=Action.NOT_FOUND,
                    state=State.FAILED,
                    message=f"Service '{name}' is not declared in {ctx.config_path}.",
                )
            )
        except (ComposeError, DockerException) as e:
            return self._finish(
                TargetResult(name=name, action=Action.PULL_FAIL, state=State.FAILED, message=f"Inspect failed: {e}")
            )

        if not declared:
            if skip_imageless:
                db.log_event("WARN", f"Service '{name}' declares no image; skipping", target=name)
                return None
            return self._finish(
                TargetResult(
                    name=name,
                    action=Action.PULL_FAIL,
                    state=State.FAILED,
                    message=f"Service '{name}' declares no image to pull.",
                )
            )

        repository = repository_of(declared)
        current_identity = resolve_container(self.client, current, repository) if current is not None else ""
        prior_reference = ((current.attrs.get("Config") or {}).get("Image") or declared) if current is not None else declared
        try:
            # What the declaration pointed at before this run pulled anything.
            declared_identity = resolve(self.client, declared)
        except ImageNotFound:
            declared_identity = ""
        drift = bool(
            self.drift_protection
            and current_identity
            and declared_identity
            and current_identity != declared_identity
        )

        reference = override or (with_tag(declared, tag) if tag else declared)
        overlay = reference if (override or tag) else None
        # A bare image id cannot be written into a compose file.
        named_alternates = [a for a in alternates if not a.startswith("sha256:")]

        # INSPECTED -> PULLED
        try:
            reference, pulled = self._acquire(
                reference, lambda: compose.pull(name, overlay), override is not None, named_alternates
            )
        except (PullFailure, ComposeError, ImageNotFound) as e:
            return self._finish(
                TargetResult(
                    name=name, action=Action.PULL_FAIL, state=State.FAILED, image_reference=reference, message=str(e)
                )
            )
        if overlay is not None:
            overlay = reference

        # PULLED -> COMPARED
        action = decide(pulled, current_identity, has_override=bool(tag or override), drift_detected=drift)
        if action.is_skip:
            if action == Action.SKIP_MISMATCH:
                message = (
                    f"'{name}' runs {current_identity} but {declared} is {declared_identity}; "
                    "not replacing a manual change without an explicit tag or rollback."
                )
            else:
                message = f"'{name}' already runs {pulled}."
            return self._finish(
                TargetResult(
                    name=name,
                    action=action,
                    state=State.SKIPPED,
                    image_reference=reference,
                    identity=pulled,
                    message=message,
                )
            )

        # COMPARED -> STARTED -> VERIFIED
        state = State.COMPARED
        try:
            db.log_event("INFO", f"Recreating compose service '{name}'", target=name, image=reference)
            compose.up(name, overlay)
            state = State.STARTED
            instances = [self.client.containers.get(i) for i in compose.container_ids(name)]
            live = [c for c in instances if c.status not in NOT_LIVE]
            new_identity = resolve_container(self.client, live[0], repository) if live else ""
        except Exception as e:
            live = None
            failure = f"Recreate failed after {state.value}: {e}."
        else:
            failure = f"No live instance of '{name}' after recreate."

        if not live:
            return self._finish(
                TargetResult(
                    name=name,
                    action=Action.RECREATE_FAIL,
                    state=State.FAILED,
                    image_reference=prior_reference,
                    identity=current_identity,
                    message=f"{failure} Previous image: {prior_reference} ({current_identity or 'unknown'}).",
                )
            )

        return self._finish(
            TargetResult(
                name=name,
                action=Action.UPDATE,
                state=State.VERIFIED,
                image_reference=reference,
                identity=new_identity,
                message=f"'{name}' moved from {current_identity or 'nothing'} to {new_identity}.",
            )
        )

    # ---- helpers ---------------------------------------------------------------

    def _running_project(self, path: str, working_dir: str) -> str | None:
        try:
            found = self.client.containers.list(all=True, filters={"label": [f"{WORKING_DIR_LABEL}={working_dir}"]})
        except DockerException as e:
            db.log_event("WARN", f"Could not look up the compose project of {path}: {e}")
            return None
        for c in found:
            ctx = context_from_labels((c.attrs.get("Config") or {}).get("Labels"))
            if ctx is not None and ctx.project and path in ctx.config_files:
                return ctx.project
        return None

    def _acquire(
        self,
        reference: str,
        pull: Callable[[], Any],
        allow_local: bool,
        alternates: Sequence[str],
    ) -> tuple[str, str]:
        """Pull ``reference`` and resolve it. Returns (reference actually usable, identity).

        With ``allow_local`` a failed pull falls back to copies already present
        locally: the reference itself first, then each alternate.
        """
        db.log_event("INFO", f"Pulling {reference}", image=reference)
        try:
            pull()
        except (PullFailure, ComposeError) as e:
            if not allow_local:
                raise
            db.log_event("WARN", f"{e}; looking for a local copy", image=reference)
            for candidate in (reference, *alternates):
                try:
                    return candidate, resolve(self.client, candidate)
                except ImageNotFound:
                    continue
            raise
        return reference, resolve(self.client, reference)

    def _aborted(self, name: str, e: Exception) -> TargetResult:
        """Record an unexpected error raised before anything destructive ran.

        Stop/remove/start and compose up handle their own errors, so a
        failure reaching this point left the target as it was.
        """
        return self._finish(
            TargetResult(
                name=name,
                action=Action.PULL_FAIL,
                state=State.FAILED,
                message=f"Aborted before any change: {type(e).__name__}: {e}",
            )
        )

    def _finish(self, result: TargetResult) -> TargetResult:
        self.ledger.append(LogRecord.now(result.name, result.image_reference, result.identity, result.action))
        if result.action == Action.RECREATE_FAIL:
            level = "ERROR"
        elif result.failed:
            level = "WARN"
        else:
            level = "INFO"
        db.log_event(level, f"{result.action.value}: {result.message}", target=result.name, image=result.image_reference)
        return result
