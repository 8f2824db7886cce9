"""Integration tests for the sce command line."""

import pytest
from typer.testing import CliRunner

from sce.cli import main as cli_main
from sce.cli.main import app
from sce.consensus.ingestion import IngestionDispatcher
from sce.core.models import ProjectRole
from sce.reconcile.scheduler import SweepScheduler
from sce.store.database import ScreeningStore

pytestmark = pytest.mark.integration

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cli.db"


@pytest.fixture
def project_id(db_path):
    store = ScreeningStore(db_path)
    project = store.create_project("CLI review", reviewers_required=2)
    store.add_member(project.project_id, "lead", ProjectRole.LEAD)
    store.close()
    return project.project_id


def test_init_db(db_path):
    result = runner.invoke(app, ["init-db", "--db", str(db_path)])
    assert result.exit_code == 0
    assert db_path.exists()


def test_import_and_queue(tmp_path, db_path, project_id):
    """Imported studies show up in a new reviewer's queue."""
    csv_path = tmp_path / "studies.csv"
    csv_path.write_text(
        "work_id,title,year,journal\n"
        "W1,Exercise and depression,2022,BMJ\n"
        "W2,Sleep and memory,,\n"
    )
    result = runner.invoke(app, ["import-studies", project_id, str(csv_path), "--db", str(db_path)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["add-member", project_id, "alice", "--db", str(db_path)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["queue", project_id, "alice", "--db", str(db_path)])
    assert result.exit_code == 0, result.output
    assert "Exercise and depression" in result.output

    store = ScreeningStore(db_path)
    studies = store.list_studies(project_id)
    store.close()
    assert [s.work_id for s in studies] == ["W1", "W2"]
    assert studies[0].year == 2022
    assert studies[1].year is None


def test_progress_and_sweep(db_path, project_id):
    result = runner.invoke(app, ["progress", project_id, "--db", str(db_path)])
    assert result.exit_code == 0, result.output
    result = runner.invoke(app, ["sweep", project_id, "--db", str(db_path)])
    assert result.exit_code == 0, result.output


def test_unknown_project_fails(db_path):
    result = runner.invoke(app, ["queue", "prj_missing", "alice", "--db", str(db_path)])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_missing_csv(tmp_path, db_path, project_id):
    result = runner.invoke(
        app, ["import-studies", project_id, str(tmp_path / "nope.csv"), "--db", str(db_path)]
    )
    assert result.exit_code == 1


def test_watch_passes_ingestion_dispatcher(monkeypatch, db_path, project_id):
    """The watch loop drains ingestion signals through the engine's dispatcher."""
    captured = {}

    class StoppingScheduler(SweepScheduler):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            captured["scheduler"] = self

        def start(self, poll_seconds=30.0, max_iterations=None):
            raise KeyboardInterrupt

    monkeypatch.setattr(cli_main, "SweepScheduler", StoppingScheduler)
    result = runner.invoke(app, ["watch", project_id, "--every", "5", "--db", str(db_path)])
    assert result.exit_code == 0, result.output
    assert "Stopped" in result.output
    scheduler = captured["scheduler"]
    assert isinstance(scheduler.dispatcher, IngestionDispatcher)
    assert scheduler.interval_minutes == 5
