import pytest

from index_migrator.environment import Environment
from index_migrator.models.cluster import AuthMethod, Cluster
from index_migrator.models.cutover import CutoverStrategy
from index_migrator.models.migration_settings import DEFAULT_TIMEOUT_SECONDS, MigrationSettings
from index_migrator.models.orchestrator import SchemaMigrator

MINIMAL_YAML = """
cluster:
  endpoint: http://search:9200
  no_auth:
"""

FULL_YAML = """
cluster:
  endpoint: https://search:9200
  allow_insecure: true
  basic_auth:
    username: admin
    password: admin
migration:
  poll_interval_seconds: 5
  timeout_seconds: 600
  cutover_strategy: copy_back
  retire_old_generation: true
  batch_size: 250
  requests_per_second: 500
  slices: auto
  index_settings:
    number_of_shards: 2
client_options:
  user_agent_extra: index-migrator-test/1.0
  request_timeout_seconds: 30
"""


def create_file_in_tmp_path(tmp_path, file_name, content):
    file_path = tmp_path / file_name
    file_path.write_text(content)
    return file_path


def test_minimal_yaml_uses_defaults(tmp_path):
    env = Environment(config_file=create_file_in_tmp_path(tmp_path, "minimal.yaml", MINIMAL_YAML))
    assert isinstance(env.cluster, Cluster)
    assert env.cluster.auth_type == AuthMethod.NO_AUTH
    assert env.client_options is None
    assert env.migration.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
    assert env.migration.cutover_strategy == CutoverStrategy.ALIAS
    assert env.migration.retire_old_generation is False


def test_full_yaml_is_propagated(tmp_path):
    env = Environment(config_file=create_file_in_tmp_path(tmp_path, "full.yaml", FULL_YAML))
    assert env.cluster.client_options.user_agent_extra == "index-migrator-test/1.0"
    assert env.client_options.request_timeout_seconds == 30

    migrator = env.migrator
    assert isinstance(migrator, SchemaMigrator)
    assert env.migrator is migrator
    assert env.engine.cluster is env.cluster
    assert migrator.monitor.poll_interval == 5
    assert migrator.coordinator.strategy == CutoverStrategy.COPY_BACK
    assert migrator.coordinator.retire_old_generation is True
    assert migrator.copier.batch_size == 250
    assert migrator.copier.slices == "auto"
    assert migrator.generations.index_settings == {"number_of_shards": 2}


def test_config_dict_overrides_file():
    env = Environment(config={"cluster": {"endpoint": "http://search:9200", "no_auth": None}})
    assert env.cluster.endpoint == "http://search:9200"


def test_missing_config_is_refused():
    with pytest.raises(ValueError):
        Environment()


def test_unknown_sections_are_refused(tmp_path):
    path = create_file_in_tmp_path(tmp_path, "invalid.yaml", MINIMAL_YAML + "made_up_section:\n  a: 1\n")
    with pytest.raises(ValueError) as excinfo:
        Environment(config_file=path)
    assert "Invalid config file" in excinfo.value.args[0]
    assert "made_up_section" in excinfo.value.args[1]


def test_cluster_is_required(tmp_path):
    path = create_file_in_tmp_path(tmp_path, "no_cluster.yaml", "migration:\n  batch_size: 10\n")
    with pytest.raises(ValueError) as excinfo:
        Environment(config_file=path)
    assert excinfo.value.args[1]["cluster"] == ["required field"]


@pytest.mark.parametrize("config, field", [
    ({"timeout_seconds": 0}, "timeout_seconds"),
    ({"poll_interval_seconds": "fast"}, "poll_interval_seconds"),
    ({"cutover_strategy": "rename"}, "cutover_strategy"),
    ({"batch_size": 0}, "batch_size"),
    ({"surprise": True}, "surprise"),
])
def test_invalid_migration_settings(config, field):
    with pytest.raises(ValueError) as excinfo:
        MigrationSettings(config)
    assert "Invalid config file for migration" in excinfo.value.args[0]
    assert field in excinfo.value.args[1]["migration"][0]


def test_empty_migration_section_uses_defaults():
    settings = MigrationSettings(None)
    assert settings.batch_size == 1000
    assert settings.requests_per_second is None
    assert settings.index_settings is None
