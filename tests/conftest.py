import pytest

from stageci.config import Settings
from stageci.coordinator import RunCoordinator
from stageci.model import Environment, TriggerEvent
from stageci.store import RunStore
from stageci.ui.console import Console, set_console

PROD_TOKEN = "s3cr3t-prod-token"


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield


@pytest.fixture
def settings(tmp_path):
    source = tmp_path / "source"
    source.mkdir()
    (source / "app.txt").write_text("hello from source\n")
    return Settings(
        database_url="sqlite://",
        artifact_root=str(tmp_path / "artifacts"),
        work_root=str(tmp_path / "work"),
        source_root=str(source),
        max_workers=4,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def coordinator(settings, sleeps):
    return RunCoordinator(
        settings,
        store=RunStore("sqlite://"),
        environments=[Environment(name="prod", protected=True, secrets={"DEPLOY_TOKEN": PROD_TOKEN})],
        sleep=sleeps.append,
    )


@pytest.fixture
def trigger():
    return TriggerEvent(ref="refs/heads/main", before="a" * 40, after="b" * 40, actor="tester")
