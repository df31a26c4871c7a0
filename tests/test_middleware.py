import json

from index_migrator.middleware import clusters as clusters_
from index_migrator.middleware import generations as generations_
from index_migrator.middleware import migration as migration_
from index_migrator.middleware.error_handler import handle_errors
from index_migrator.middleware.json_support import support_json_return
from index_migrator.models.errors import EngineUnavailable, TypeConflict
from index_migrator.models.generation import IndexGenerationManager
from index_migrator.models.orchestrator import SchemaMigrator
from index_migrator.models.planner import FieldRequest
from index_migrator.models.task_monitor import TaskMonitor
from index_migrator.models.utils import ExitCode
from tests.fake_engine import FakeSearchEngine
from tests.utils import FakeClock


def test_handle_errors_passes_results_through():
    @handle_errors("thing")
    def fetch():
        return {"a": 1}

    assert fetch() == (ExitCode.SUCCESS, {"a": 1})


def test_handle_errors_reports_migration_errors():
    @handle_errors("backfill")
    def start():
        raise TypeConflict("rating", "integer", "keyword")

    exit_code, message = start()
    assert exit_code == ExitCode.FAILURE
    assert message.startswith("Failure on start for backfill: TypeConflict Field 'rating'")


def test_handle_errors_reports_unexpected_errors_by_type():
    @handle_errors("cutover")
    def pause():
        raise KeyError("posts")

    assert pause() == (ExitCode.FAILURE, "Failure on pause for cutover: KeyError 'posts'")


def test_handle_errors_applies_success_predicate():
    @handle_errors("task", succeeded=lambda result: result == "ok")
    def status(value):
        return value

    assert status("ok") == (ExitCode.SUCCESS, "ok")
    assert status("bad") == (ExitCode.FAILURE, "bad")


def test_json_support_renders_each_kind():
    class Displayable:
        def display(self):
            return "pretty"

    @support_json_return()
    def produce(value):
        return ExitCode.SUCCESS, value

    assert produce("plain") == (ExitCode.SUCCESS, "plain")
    assert produce(Displayable()) == (ExitCode.SUCCESS, "pretty")
    assert produce({"b": [1, 2]}) == (ExitCode.SUCCESS, "b:\n- 1\n- 2\n")
    assert produce({"b": [1, 2]}, as_json=True) == (ExitCode.SUCCESS, '{"b": [1, 2]}')


def test_connection_check_reports_unreachable_engine(mocker):
    engine = FakeSearchEngine()
    mocker.patch.object(engine, "info", side_effect=EngineUnavailable("connection refused"))
    result = clusters_.connection_check(engine)
    assert not result.connection_established
    assert "connection refused" in result.connection_message
    assert result.display().startswith("Endpoint: http://fake-engine:9200")


def test_connection_check_reports_version():
    result = clusters_.connection_check(FakeSearchEngine())
    assert result.connection_established
    assert result.cluster_version == "7.10.2"


def test_plan_as_json():
    engine = FakeSearchEngine()
    engine.add_index("posts_v1", properties={"title": {"type": "text"}}, aliases=("posts",))
    clock = FakeClock()
    migrator = SchemaMigrator(engine, monitor=TaskMonitor(engine, clock=clock, sleep=clock.sleep))

    exit_code, output = migration_.plan(migrator, "posts", [FieldRequest(name="title", descriptor="keyword")],
                                        as_json=True)
    assert exit_code == ExitCode.SUCCESS
    plan = json.loads(output)
    assert plan["strategy"] == "FullRegeneration"
    assert plan["dest_generation"] == "posts_v2"


def test_describe_missing_generation():
    exit_code, message = generations_.describe(IndexGenerationManager(FakeSearchEngine()), "posts_v9")
    assert exit_code == ExitCode.FAILURE
    assert "GenerationNotFound" in message


def test_delete_missing_generation_is_idempotent():
    exit_code, message = generations_.delete(IndexGenerationManager(FakeSearchEngine()), "posts_v9")
    assert exit_code == ExitCode.SUCCESS
    assert message == "Generation posts_v9 did not exist; nothing to delete"
