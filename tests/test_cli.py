import json

from click.testing import CliRunner
import pytest
import requests

from index_migrator.cli import cli
from index_migrator.environment import Environment
from index_migrator.models.orchestrator import SchemaMigrator
from index_migrator.models.task import MigrationTask, TaskKind, TaskStatus
from index_migrator.models.task_monitor import TaskMonitor
from tests.fake_engine import FakeSearchEngine
from tests.utils import FakeClock

CONFIG_YAML = """
cluster:
  endpoint: "http://search:9200"
  no_auth:
migration:
  poll_interval_seconds: 1
  timeout_seconds: 60
"""


@pytest.fixture
def runner():
    """A CliRunner for the cli function"""
    return CliRunner()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "migration_services.yaml"
    path.write_text(CONFIG_YAML)
    return str(path)


@pytest.fixture
def engine():
    engine = FakeSearchEngine()
    engine.add_index("posts_v1", properties={"title": {"type": "text"}},
                     docs={"1": {"title": "first"}, "2": {"title": "second"}}, aliases=("posts",))
    return engine


@pytest.fixture
def migrator(engine, mocker):
    clock = FakeClock()
    migrator = SchemaMigrator(engine, monitor=TaskMonitor(engine, poll_interval=1, clock=clock, sleep=clock.sleep))
    mocker.patch.object(Environment, "migrator", new_callable=mocker.PropertyMock, return_value=migrator)
    return migrator


def invoke(runner, config_path, *args):
    return runner.invoke(cli, ["--config-file", config_path, *args], catch_exceptions=True)


def test_invalid_config_is_reported(runner, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("cluster:\n  endpoint: http://search:9200\n")
    result = runner.invoke(cli, ["--config-file", str(path), "generations", "list", "posts"])
    assert result.exit_code == 1
    assert "Invalid config file" in result.output


def test_connection_check_succeeds(runner, config_path, requests_mock):
    requests_mock.get("http://search:9200/", json={"version": {"number": "2.11.0", "distribution": "opensearch"}})
    result = invoke(runner, config_path, "connection-check")
    assert result.exit_code == 0
    assert "Successfully connected!" in result.output
    assert "opensearch 2.11.0" in result.output


def test_connection_check_fails(runner, config_path, requests_mock):
    requests_mock.get("http://search:9200/", exc=requests.exceptions.ConnectionError("refused"))
    result = invoke(runner, config_path, "--json", "connection-check")
    assert result.exit_code == 1
    assert json.loads(result.output)["connection_established"] is False


def test_generations_list(runner, config_path, migrator, engine):
    engine.add_index("posts_v2")
    result = invoke(runner, config_path, "--json", "generations", "list", "posts")
    assert result.exit_code == 0
    output = json.loads(result.output)
    assert output["live_generation"] == "posts_v1"
    assert [g["name"] for g in output["generations"]] == ["posts_v1", "posts_v2"]


def test_generations_describe(runner, config_path, migrator):
    result = invoke(runner, config_path, "generations", "describe", "posts_v1")
    assert result.exit_code == 0
    assert "document_count: 2" in result.output
    assert "- posts" in result.output


def test_deleting_a_live_generation_fails(runner, config_path, migrator, engine):
    result = invoke(runner, config_path, "generations", "delete", "posts_v1", "--acknowledge-risk")
    assert result.exit_code == 1
    assert "GenerationInUse" in result.output
    assert "posts_v1" in engine.indices


def test_delete_asks_for_confirmation(runner, config_path, migrator, engine):
    engine.add_index("posts_v0")
    result = runner.invoke(cli, ["--config-file", config_path, "generations", "delete", "posts_v0"], input="n\n")
    assert "Aborting command." in result.output
    assert "posts_v0" in engine.indices

    result = invoke(runner, config_path, "generations", "delete", "posts_v0", "--acknowledge-risk")
    assert result.exit_code == 0
    assert "Deleted generation posts_v0" in result.output


def test_plan_changes_nothing(runner, config_path, migrator, engine):
    result = invoke(runner, config_path, "migrate", "plan", "posts", "--field", "title:keyword")
    assert result.exit_code == 0
    assert "Strategy: FullRegeneration" in result.output
    assert "Destination generation: posts_v2" in result.output
    assert engine.calls_to("create_index") == []


def test_malformed_field_is_a_usage_error(runner, config_path, migrator):
    result = invoke(runner, config_path, "migrate", "plan", "posts", "--field", "title")
    assert result.exit_code == 2
    assert "name:type[=default]" in result.output


def test_run_additive_migration(runner, config_path, migrator, engine):
    result = invoke(runner, config_path, "migrate", "run", "posts", "--field", "views:integer=0")
    assert result.exit_code == 0
    assert "Strategy: LazyBackfill" in result.output
    assert "Live generation for posts: posts_v1" in result.output
    assert {doc["views"] for doc in engine.docs("posts_v1").values()} == {0}


def test_run_full_regeneration_as_json(runner, config_path, migrator, engine, tmp_path):
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text("mappings:\n  properties:\n    title:\n      type: keyword\n")
    result = invoke(runner, config_path, "--json", "migrate", "run", "posts", "--mapping-file", str(mapping_file))

    assert result.exit_code == 0
    report = json.loads(result.output)
    assert report["outcome"] == "Completed"
    assert report["live_generation"] == "posts_v2"
    assert engine.get_alias_targets("posts") == ["posts_v2"]


def test_failed_run_exits_nonzero(runner, config_path, migrator, engine):
    engine.fail_tasks = True
    result = invoke(runner, config_path, "migrate", "run", "posts", "--field", "title:keyword")
    assert result.exit_code == 1
    assert "Outcome: Failed" in result.output
    assert "Live generation for posts: posts_v1" in result.output


def test_no_wait_run_is_not_a_failure(runner, config_path, migrator, engine):
    engine.running_polls = 3
    result = invoke(runner, config_path, "migrate", "run", "posts", "--field", "title:keyword", "--no-wait")
    assert result.exit_code == 0
    assert "Outcome: Running" in result.output
    assert "migrate await fakenode:1 --generation posts_v2" in result.output


def test_backfill_with_suggested_default(runner, config_path, migrator, engine):
    result = invoke(runner, config_path, "migrate", "backfill", "posts_v1", "status", "--type", "keyword")
    assert result.exit_code == 0
    assert "Using suggested default 'draft' for status" in result.output
    assert {doc["status"] for doc in engine.docs("posts_v1").values()} == {"draft"}


def test_backfill_without_a_possible_default(runner, config_path, migrator):
    result = invoke(runner, config_path, "migrate", "backfill", "posts_v1", "published", "--type", "date")
    assert result.exit_code == 2
    assert "explicit default is required" in result.output


def test_await_records_the_outcome(runner, config_path, migrator, engine):
    engine.add_index("posts_v2", properties={"title": {"type": "keyword"}})
    response = engine.reindex("posts_v1", "posts_v2")
    result = invoke(runner, config_path, "migrate", "await", response["task"], "--timeout", "30",
                    "--generation", "posts_v2")
    assert result.exit_code == 0
    assert "status: Completed" in result.output
    assert migrator.generations.recorded_outcome("posts_v2").status == TaskStatus.COMPLETED


def test_cutover_refused_after_failure(runner, config_path, migrator, engine):
    engine.add_index("posts_v2")
    migrator.generations.record_outcome("posts_v2", MigrationTask(task_id="node:1", kind=TaskKind.BULK_COPY,
                                                                  generation="posts_v2",
                                                                  status=TaskStatus.FAILED))
    result = invoke(runner, config_path, "migrate", "cutover", "posts", "posts_v2")
    assert result.exit_code == 1
    assert "CutoverPreconditionFailed" in result.output
    assert engine.get_alias_targets("posts") == ["posts_v1"]


def test_cutover_and_rollback(runner, config_path, migrator, engine):
    engine.add_index("posts_v2")
    migrator.generations.record_outcome("posts_v2", MigrationTask(task_id="node:1", kind=TaskKind.BULK_COPY,
                                                                  generation="posts_v2",
                                                                  status=TaskStatus.COMPLETED))
    result = invoke(runner, config_path, "migrate", "cutover", "posts", "posts_v2")
    assert result.exit_code == 0
    assert "posts now resolves to posts_v2" in result.output

    result = invoke(runner, config_path, "migrate", "rollback", "posts", "posts_v1")
    assert result.exit_code == 0
    assert engine.get_alias_targets("posts") == ["posts_v1"]
