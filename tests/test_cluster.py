from base64 import b64encode
import os

import boto3
from moto import mock_aws
import pytest
import requests

from index_migrator.models.client_options import ClientOptions
from index_migrator.models.cluster import AuthMethod, Cluster, HttpMethod
from tests.utils import create_valid_cluster


@pytest.fixture(scope="function")
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-west-1"


SECRET_ARN = "arn:aws:secretsmanager:us-east-1:12345678912:secret:search-admin"


def test_valid_cluster_config():
    cluster = create_valid_cluster()
    assert isinstance(cluster, Cluster)
    assert cluster.auth_type == AuthMethod.BASIC_AUTH


def test_trailing_slash_is_stripped_from_endpoint():
    cluster = Cluster({"endpoint": "http://search:9200/", "no_auth": None})
    assert cluster.endpoint == "http://search:9200"
    assert cluster.allow_insecure


def test_multiple_auth_types_refused():
    with pytest.raises(ValueError) as excinfo:
        Cluster({"endpoint": "https://search:9200", "basic_auth": {"username": "a", "password": "b"},
                 "no_auth": {}})
    assert "Invalid config file for cluster" in excinfo.value.args[0]
    assert excinfo.value.args[1]["cluster"] == [
        "Only one of ['basic_auth', 'no_auth', 'sigv4'] may be given, found ['basic_auth', 'no_auth']"]


def test_missing_auth_type_refused():
    with pytest.raises(ValueError) as excinfo:
        Cluster({"endpoint": "https://search:9200"})
    assert excinfo.value.args[1]["cluster"] == [
        "Exactly one of ['basic_auth', 'no_auth', 'sigv4'] is required, none was given"]


def test_missing_endpoint_refused():
    with pytest.raises(ValueError) as excinfo:
        Cluster({"no_auth": {}})
    assert excinfo.value.args[1]["cluster"][0]["endpoint"] == ["required field"]


@pytest.mark.parametrize("basic_auth, message", [
    ({"username": "a", "password": "b", "user_secret_arn": SECRET_ARN},
     "Give either username and password or user_secret_arn, not both"),
    ({"username": "a"}, "Requires username and password, or user_secret_arn"),
    ({"username": "", "password": "b"}, "username and password must not be empty"),
])
def test_invalid_basic_auth_refused(basic_auth, message):
    with pytest.raises(ValueError) as excinfo:
        Cluster({"endpoint": "https://search:9200", "basic_auth": basic_auth})
    assert excinfo.value.args[1]["cluster"][0]["basic_auth"] == [message]


def test_sigv4_defaults_to_es_service():
    cluster = Cluster({"endpoint": "https://search:9200", "sigv4": {"region": "us-east-1"}})
    assert cluster.auth_type == AuthMethod.SIGV4
    assert cluster.sigv4_signing_scope() == ("es", "us-east-1")


def test_sigv4_region_comes_from_boto_session(aws_credentials):
    with mock_aws():
        cluster = Cluster({"endpoint": "https://search:9200", "sigv4": None})
        assert cluster.sigv4_signing_scope() == ("es", None)
        assert cluster.sigv4_signing_scope(resolve_region=True) == ("es", "us-west-1")


def test_api_call_with_no_auth(requests_mock):
    cluster = create_valid_cluster(auth_type=AuthMethod.NO_AUTH)
    requests_mock.get(f"{cluster.endpoint}/_cat/indices", json={"ok": True})

    response = cluster.call_api("/_cat/indices")
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert "Authorization" not in requests_mock.last_request.headers


def test_api_call_with_basic_auth(requests_mock):
    cluster = create_valid_cluster()
    requests_mock.put(f"{cluster.endpoint}/posts_v2", json={"acknowledged": True})

    cluster.call_api("/posts_v2", HttpMethod.PUT, data="{}", headers={"Content-Type": "application/json"})
    token = b64encode(b"admin:myStrongPassword123!").decode("ascii")
    assert requests_mock.last_request.headers["Authorization"] == f"Basic {token}"


def test_api_call_applies_client_options(requests_mock, mocker):
    options = ClientOptions(config={"user_agent_extra": "index-migrator-test/1.0", "request_timeout_seconds": 7})
    cluster = create_valid_cluster(auth_type=AuthMethod.NO_AUTH, client_options=options)
    requests_mock.get(f"{cluster.endpoint}/", json={})
    spy = mocker.spy(requests.Session, "request")

    cluster.call_api("/")
    assert "index-migrator-test/1.0" in requests_mock.last_request.headers["User-Agent"]
    assert spy.call_args.kwargs["timeout"] == 7

    cluster.call_api("/", timeout=1)
    assert spy.call_args.kwargs["timeout"] == 1


def test_api_call_raises_on_error_status(requests_mock):
    cluster = create_valid_cluster(auth_type=AuthMethod.NO_AUTH)
    requests_mock.get(f"{cluster.endpoint}/missing", status_code=404, json={"error": "index_not_found_exception"})

    with pytest.raises(requests.HTTPError):
        cluster.call_api("/missing")
    assert cluster.call_api("/missing", raise_error=False).status_code == 404


def test_api_call_with_secrets_auth(requests_mock, aws_credentials):
    requests_mock.get("https://search:9200/", json={})
    with mock_aws():
        secret = boto3.client("secretsmanager").create_secret(
            Name="search-admin", SecretString='{"username": "migrator", "password": "s3cret"}')
        cluster = Cluster({"endpoint": "https://search:9200", "allow_insecure": True,
                           "basic_auth": {"user_secret_arn": secret["ARN"]}})
        cluster.call_api("/")

    token = b64encode(b"migrator:s3cret").decode("ascii")
    assert requests_mock.last_request.headers["Authorization"] == f"Basic {token}"


def test_auth_is_resolved_once(requests_mock, mocker):
    mock_client = mocker.Mock()
    mock_client.get_secret_value.return_value = {"SecretString": '{"username": "admin", "password": "pw"}'}
    mocker.patch("index_migrator.models.cluster.create_boto3_client", return_value=mock_client)
    cluster = Cluster({"endpoint": "https://search:9200", "basic_auth": {"user_secret_arn": SECRET_ARN}})
    requests_mock.get("https://search:9200/_tasks/node:1", json={"completed": False})

    for _ in range(3):
        cluster.call_api("/_tasks/node:1")
    mock_client.get_secret_value.assert_called_once_with(SecretId=SECRET_ARN)


def test_secret_without_json_is_refused(mocker):
    mock_client = mocker.Mock()
    mock_client.get_secret_value.return_value = {"SecretString": "pass123!"}
    mocker.patch("index_migrator.models.cluster.create_boto3_client", return_value=mock_client)
    cluster = Cluster({"endpoint": "https://search:9200", "basic_auth": {"user_secret_arn": SECRET_ARN}})

    with pytest.raises(ValueError) as excinfo:
        cluster.basic_credentials()
    assert "must be a JSON object" in str(excinfo.value)


def test_secret_missing_keys_is_refused(mocker):
    mock_client = mocker.Mock()
    mock_client.get_secret_value.return_value = {"SecretString": '{"user": "admin"}'}
    mocker.patch("index_migrator.models.cluster.create_boto3_client", return_value=mock_client)
    cluster = Cluster({"endpoint": "https://search:9200", "basic_auth": {"user_secret_arn": SECRET_ARN}})

    with pytest.raises(ValueError) as excinfo:
        cluster.basic_credentials()
    assert str(excinfo.value) == f"Secret {SECRET_ARN} is missing required key(s): username, password"


def test_api_call_with_sigv4_auth(requests_mock, aws_credentials):
    cluster = Cluster({"endpoint": "https://search.example.com:9200", "sigv4": {"region": "us-east-2"}})
    requests_mock.get(f"{cluster.endpoint}/_tasks/node:1", json={})

    with mock_aws():
        cluster.call_api("/_tasks/node:1")

    auth_header = requests_mock.last_request.headers["Authorization"]
    assert "AWS4-HMAC-SHA256" in auth_header
    assert "us-east-2/es/aws4_request" in auth_header
    assert requests_mock.last_request.headers["Host"] == "search.example.com"
