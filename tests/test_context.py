import pytest

from conftest import compose_labels, make_image
from dur.context import classify, context_from_labels, detect
from dur.errors import ContainerNotFound
from dur.models import Managed, Standalone


def test_context_from_full_labels():
    ctx = context_from_labels(compose_labels("api"))
    assert ctx.service == "api"
    assert ctx.config_files == ("/srv/app/compose.yml",)
    assert ctx.working_dir == "/srv/app"
    assert ctx.project == "app"
    assert ctx.config_path == "/srv/app/compose.yml"


def test_context_with_several_and_relative_files():
    labels = compose_labels("api", config_file="compose.yml, /etc/stack/override.yml")
    ctx = context_from_labels(labels)
    assert ctx.config_files == ("/srv/app/compose.yml", "/etc/stack/override.yml")


@pytest.mark.parametrize(
    "missing",
    [
        "com.docker.compose.project.config_files",
        "com.docker.compose.project.working_dir",
        "com.docker.compose.service",
    ],
)
def test_partial_labels_mean_standalone(missing):
    labels = compose_labels("api")
    labels[missing] = ""
    assert context_from_labels(labels) is None


def test_no_labels():
    assert context_from_labels(None) is None
    assert context_from_labels({}) is None


def test_classify_picks_the_update_path(fake_docker):
    image = fake_docker.images.store(make_image(1), "example/app:latest")
    fake_docker.add_container("app-api-1", image, labels=compose_labels("api"))
    fake_docker.add_container("solo", image, labels={"maintainer": "ops"})

    managed = classify(fake_docker, "app-api-1")
    assert isinstance(managed, Managed)
    assert managed.context.service == "api"

    standalone = classify(fake_docker, "solo")
    assert isinstance(standalone, Standalone)
    assert standalone.spec.name == "solo"

    assert detect(fake_docker, "solo") is None
    assert detect(fake_docker, "app-api-1").service == "api"


def test_classify_missing_container(fake_docker):
    with pytest.raises(ContainerNotFound):
        classify(fake_docker, "ghost")
