import itertools
import os as _os
import sys

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

# Ensure project root is importable (so `import cli` works without installing).
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dur import db  # noqa: E402
from dur.errors import ComposeError  # noqa: E402
from dur.ledger import Ledger  # noqa: E402
from dur.settings import Settings  # noqa: E402


# ---------------------------------------------------------------------------
# In-memory docker client
# ---------------------------------------------------------------------------

_ids = itertools.count(1)


class FakeImage:
    def __init__(self, image_id, repo_digests=(), entrypoint=None, env=None):
        self.id = image_id
        self.attrs = {
            "Id": image_id,
            "RepoDigests": list(repo_digests),
            "Config": {"Entrypoint": entrypoint, "Env": list(env or [])},
        }

    @property
    def digest(self):
        digests = self.attrs["RepoDigests"]
        return digests[0].partition("@")[2] if digests else self.id


def make_image(n, repo="example/app", entrypoint=None, with_digest=True, env=None):
    digest = f"sha256:{n:064x}"
    image_id = f"sha256:{n + 1000:064x}"
    return FakeImage(image_id, [f"{repo}@{digest}"] if with_digest else [], entrypoint=entrypoint, env=env)


class FakeImages:
    def __init__(self):
        self.local = {}
        self.registry = {}
        self.pulls = []
        self.prunes = 0

    def _refs(self, image, refs):
        return [image.id, *refs, *image.attrs["RepoDigests"]]

    def store(self, image, *refs):
        for ref in self._refs(image, refs):
            self.local[ref] = image
        return image

    def publish(self, image, *refs):
        for ref in self._refs(image, refs):
            if ref != image.id:
                self.registry[ref] = image
        return image

    def get(self, ref):
        if ref in self.local:
            return self.local[ref]
        raise ImageNotFound(f"No such image: {ref}")

    def pull(self, ref, tag=None, **kwargs):
        self.pulls.append(ref)
        if ref not in self.registry:
            raise APIError(f"pull access denied for {ref}")
        return self.store(self.registry[ref], ref)

    def prune(self, filters=None):
        self.prunes += 1
        return {"ImagesDeleted": [], "SpaceReclaimed": 0}


def _port_bindings(ports):
    out = {}
    for key, value in (ports or {}).items():
        values = value if isinstance(value, list) else [value]
        bindings = []
        for v in values:
            if v is None:
                bindings.append({"HostIp": "", "HostPort": ""})
            elif isinstance(v, tuple) and len(v) == 2:
                bindings.append({"HostIp": v[0], "HostPort": str(v[1])})
            elif isinstance(v, tuple):
                bindings.append({"HostIp": v[0], "HostPort": ""})
            else:
                bindings.append({"HostIp": "", "HostPort": str(v)})
        out[key] = bindings
    return out


def _mounts(mounts):
    out = []
    for m in mounts or []:
        entry = {"Type": m["Type"], "Destination": m["Target"], "RW": not m.get("ReadOnly", False)}
        if m["Type"] == "volume":
            entry["Name"] = m["Source"]
            entry["Source"] = f"/var/lib/docker/volumes/{m['Source']}/_data"
        elif m["Type"] == "bind":
            entry["Source"] = m["Source"]
        out.append(entry)
    return out


def _merge_env(image_env, env):
    """The daemon starts from the image's env and lets the container's entries win by key."""
    env = list(env or [])
    keys = {e.partition("=")[0] for e in env}
    return [e for e in image_env if e.partition("=")[0] not in keys] + env


class FakeContainer:
    def __init__(self, client, name, reference, image, labels=None, status="running", **config):
        self.client = client
        self.id = f"{next(_ids):012x}" + "f" * 52
        self.name = name
        self.status = status
        self.attrs = {
            "Id": self.id,
            "Name": f"/{name}",
            "Image": image.id,
            "Config": {
                "Image": reference,
                "Env": _merge_env(image.attrs["Config"]["Env"], config.get("env")),
                "Labels": dict(labels or {}),
                "Hostname": config.get("hostname") or self.id[:12],
                "Entrypoint": config.get("entrypoint") or image.attrs["Config"]["Entrypoint"],
            },
            "HostConfig": {
                "PortBindings": config.get("port_bindings") or {},
                "RestartPolicy": config.get("restart_policy") or {"Name": "no", "MaximumRetryCount": 0},
                "NetworkMode": config.get("network_mode") or "bridge",
            },
            "Mounts": list(config.get("mounts") or []),
        }

    @property
    def labels(self):
        return self.attrs["Config"]["Labels"]

    @property
    def image(self):
        return self.client.images.get(self.attrs["Image"])

    def reload(self):
        pass

    def stop(self, timeout=10):
        self.client.calls.append(("stop", self.name))
        if self.client.fail_stop:
            raise APIError(f"cannot stop {self.name}")
        self.status = "exited"

    def remove(self, force=False):
        self.client.calls.append(("remove", self.name))
        self.client.containers.discard(self)


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.items = []

    def discard(self, container):
        self.items = [c for c in self.items if c is not container]

    def add(self, container):
        if any(c.name == container.name for c in self.items):
            raise APIError(f"Conflict. The container name '/{container.name}' is already in use")
        self.items.append(container)
        return container

    def get(self, key):
        for c in self.items:
            if key in (c.name, c.id):
                return c
        raise NotFound(f"No such container: {key}")

    def list(self, all=False, filters=None):
        wanted = [w.partition("=") for w in (filters or {}).get("label") or []]
        out = []
        for c in self.items:
            if not all and c.status != "running":
                continue
            if [k for k, _, v in wanted if c.labels.get(k) != v]:
                continue
            out.append(c)
        return out

    def run(self, image, detach=False, name=None, environment=None, ports=None, mounts=None, restart_policy=None,
            network_mode=None, hostname=None, entrypoint=None, labels=None, **kwargs):
        self.client.calls.append(("run", name, image))
        self.client.run_kwargs.append(
            dict(name=name, environment=environment, ports=ports, mounts=mounts, restart_policy=restart_policy,
                 network_mode=network_mode, hostname=hostname, entrypoint=entrypoint)
        )
        if self.client.fail_run:
            raise APIError(f"failed to start {name}")
        img = self.client.images.get(image)
        return self.add(
            FakeContainer(
                self.client,
                name or f"container-{next(_ids)}",
                image,
                img,
                labels=labels,
                env=environment,
                port_bindings=_port_bindings(ports),
                mounts=_mounts(mounts),
                restart_policy=restart_policy,
                network_mode=network_mode,
                hostname=hostname,
                entrypoint=entrypoint,
            )
        )


class FakeDocker:
    def __init__(self):
        self.images = FakeImages()
        self.containers = FakeContainers(self)
        self.calls = []
        self.run_kwargs = []
        self.fail_run = False
        self.fail_stop = False

    def ping(self):
        return True

    def add_container(self, name, image, reference="example/app:latest", **kwargs):
        return self.containers.add(FakeContainer(self, name, reference, image, **kwargs))

    @property
    def destructive_calls(self):
        return [c for c in self.calls if c[0] in {"stop", "remove", "run"}]


# ---------------------------------------------------------------------------
# In-memory compose project
# ---------------------------------------------------------------------------


def compose_labels(service, config_file="/srv/app/compose.yml", working_dir="/srv/app", project="app"):
    return {
        "com.docker.compose.project": project,
        "com.docker.compose.project.config_files": config_file,
        "com.docker.compose.project.working_dir": working_dir,
        "com.docker.compose.service": service,
    }


class FakeCompose:
    """Stands in for `dur.compose_ops.Compose`; ``factory`` is passed to the Reconciler."""

    def __init__(self, client, project="app"):
        self.client = client
        self.project = project
        self.declared = {}
        self.calls = []
        self.opened = []
        self.fail_up = set()
        self.dies_after_up = set()

    def factory(self, config_files, working_dir, project=None):
        self.opened.append((tuple(config_files), working_dir, project))
        return self

    def services(self):
        return list(self.declared)

    def declared_image(self, service):
        if service not in self.declared:
            raise KeyError(service)
        return self.declared[service]

    def pull(self, service, image=None):
        ref = image or self.declared[service]
        self.calls.append(("pull", service, image))
        try:
            self.client.images.pull(ref)
        except APIError as e:
            raise ComposeError(str(e))

    def start(self, service, reference=None):
        """Create the service container the way `up` would (test setup helper)."""
        ref = reference or self.declared[service]
        for c in self.client.containers.list(all=True, filters={"label": [f"com.docker.compose.service={service}"]}):
            self.client.containers.discard(c)
        return self.client.add_container(
            f"{self.project}-{service}-1",
            self.client.images.get(ref),
            reference=ref,
            labels=compose_labels(service, project=self.project),
        )

    def up(self, service, image=None):
        self.calls.append(("up", service, image))
        if service in self.fail_up:
            raise ComposeError(f"up failed for {service}")
        container = self.start(service, image)
        if service in self.dies_after_up:
            container.status = "exited"

    def container_ids(self, service, include_stopped=False):
        found = self.client.containers.list(
            all=include_stopped, filters={"label": [f"com.docker.compose.service={service}"]}
        )
        return [c.id for c in found]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own event database."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db")))
    db.init_db()


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def fake_compose(fake_docker):
    return FakeCompose(fake_docker)


@pytest.fixture
def ledger(tmp_path):
    return Ledger(str(tmp_path / "history.log"))
