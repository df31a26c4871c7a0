import pytest

from index_migrator.models.bulk_copy import BulkCopyDriver
from index_migrator.models.errors import EngineRejected, GenerationNotFound
from index_migrator.models.planner import build_transform_script
from index_migrator.models.task import TaskStatus
from index_migrator.models.task_monitor import TaskMonitor
from tests.fake_engine import FakeSearchEngine
from tests.utils import FakeClock

DOCS = {"1": {"title": "first", "category": "tech"}, "2": {"title": "second"}}


@pytest.fixture
def engine():
    engine = FakeSearchEngine()
    engine.add_index("posts_v1", properties={"title": {"type": "text"}}, docs=DOCS)
    engine.add_index("posts_v2", properties={"title": {"type": "text"}, "category": {"type": "keyword"}})
    return engine


@pytest.fixture
def monitor(engine):
    clock = FakeClock()
    return TaskMonitor(engine, poll_interval=1, clock=clock, sleep=clock.sleep)


def test_copy_of_empty_source_completes_with_nothing_processed(monitor):
    engine = monitor.engine
    engine.add_index("empty_v1")
    engine.add_index("empty_v2")

    task = BulkCopyDriver(engine).copy("empty_v1", "empty_v2")
    assert task.status == TaskStatus.RUNNING
    outcome = monitor.track(task, timeout=30)

    assert outcome.status == TaskStatus.COMPLETED
    assert task.status == TaskStatus.COMPLETED
    assert task.processed_count == 0
    assert task.failures == []


def test_async_copy_returns_task_handle(engine, monitor):
    engine.running_polls = 2
    task = BulkCopyDriver(engine).copy("posts_v1", "posts_v2")

    assert task.task_id is not None
    assert task.source_generation == "posts_v1"
    assert task.generation == "posts_v2"
    outcome = monitor.track(task, timeout=30)
    assert outcome.polls == 3
    assert task.processed_count == 2
    assert engine.docs("posts_v2") == DOCS


def test_transform_script_fills_defaults_during_copy(engine):
    script = build_transform_script({"category": "general"}, [])
    BulkCopyDriver(engine).copy("posts_v1", "posts_v2", transform_script=script, wait_for_completion=True)

    assert engine.docs("posts_v2")["1"]["category"] == "tech"
    assert engine.docs("posts_v2")["2"]["category"] == "general"
    assert engine.docs("posts_v1")["2"] == {"title": "second"}


def test_synchronous_copy_returns_terminal_task(engine):
    task = BulkCopyDriver(engine).copy("posts_v1", "posts_v2", wait_for_completion=True)

    assert task.task_id is None
    assert task.status == TaskStatus.COMPLETED
    assert task.total_estimate == 2
    assert task.processed_count == 2


def test_synchronous_copy_with_failures_is_failed(engine):
    engine.fail_tasks = True
    task = BulkCopyDriver(engine).copy("posts_v1", "posts_v2", wait_for_completion=True)
    assert task.status == TaskStatus.FAILED
    assert task.failures[0]["cause"]["type"] == "mapper_parsing_exception"


def test_async_copy_failure_is_discovered_by_the_monitor(engine, monitor):
    engine.fail_tasks = True
    task = BulkCopyDriver(engine).copy("posts_v1", "posts_v2")
    outcome = monitor.track(task, timeout=30)
    assert outcome.status == TaskStatus.FAILED
    assert "resubmitted into a clean generation" in outcome.message


@pytest.mark.parametrize("source, dest", [("posts_v0", "posts_v2"), ("posts_v1", "posts_v3")])
def test_both_generations_must_exist(engine, source, dest):
    with pytest.raises(GenerationNotFound):
        BulkCopyDriver(engine).copy(source, dest)
    assert engine.calls_to("reindex") == []


def test_missing_task_handle_is_rejected(engine, mocker):
    mocker.patch.object(engine, "reindex", return_value={"acknowledged": True})
    with pytest.raises(EngineRejected):
        BulkCopyDriver(engine).copy("posts_v1", "posts_v2")


def test_throttling_options_are_passed_to_the_engine(engine, mocker):
    spy = mocker.spy(engine, "reindex")
    BulkCopyDriver(engine, batch_size=500, requests_per_second=100, slices="auto").copy("posts_v1", "posts_v2")
    spy.assert_called_once_with("posts_v1", "posts_v2", script=None, wait_for_completion=False, batch_size=500,
                                requests_per_second=100, slices="auto")
