"""
The cluster that hosts the index generations, and the single HTTP entry point every engine call goes through.

A cluster config names its endpoint and exactly one of `no_auth`, `basic_auth` or `sigv4`. Basic auth credentials
are either inline or read from a Secrets Manager secret holding a JSON object with `username` and `password`.
"""
from enum import Enum
import json
import logging
from typing import Any, Dict, NamedTuple, Optional

import boto3
from cerberus import Validator
import requests
import requests.auth

from index_migrator.models.client_options import ClientOptions
from index_migrator.models.schema_tools import exactly_one_of
from index_migrator.models.utils import SigV4AuthPlugin, create_boto3_client, with_user_agent_extra

requests.packages.urllib3.disable_warnings()  # ignore: type

logger = logging.getLogger(__name__)

AuthMethod = Enum("AuthMethod", ["NO_AUTH", "BASIC_AUTH", "SIGV4"])
HttpMethod = Enum("HttpMethod", ["GET", "POST", "PUT", "DELETE", "HEAD"])

DEFAULT_SIGV4_SERVICE = "es"


def check_basic_auth(field, value, error):
    inline = value.get("username") is not None and value.get("password") is not None
    from_secret = value.get("user_secret_arn") is not None
    if inline and from_secret:
        error(field, "Give either username and password or user_secret_arn, not both")
    elif inline and "" in (value["username"], value["password"]):
        error(field, "username and password must not be empty")
    elif not inline and not from_secret:
        error(field, "Requires username and password, or user_secret_arn")


AUTH_SCHEMAS = {
    "no_auth": {"nullable": True},
    "basic_auth": {
        "type": "dict",
        "schema": {key: {"type": "string"} for key in ("username", "password", "user_secret_arn")},
        "check_with": check_basic_auth,
    },
    "sigv4": {
        "type": "dict",
        "nullable": True,
        "schema": {"region": {"type": "string"}, "service": {"type": "string"}},
    },
}

SCHEMA = {
    "cluster": {
        "type": "dict",
        "schema": {
            "endpoint": {"type": "string", "required": True},
            "allow_insecure": {"type": "boolean"},
            "version": {"type": "string"},
            **AUTH_SCHEMAS,
        },
        "check_with": exactly_one_of(AUTH_SCHEMAS),
    }
}


class BasicCredentials(NamedTuple):
    username: str
    password: str


class Cluster:
    """
    The Elasticsearch or OpenSearch cluster that hosts the index generations being migrated.
    """

    def __init__(self, config: Dict, client_options: Optional[ClientOptions] = None) -> None:
        v = Validator(SCHEMA)
        if not v.validate({"cluster": config}):
            raise ValueError("Invalid config file for cluster", v.errors)

        self.config = config
        self.endpoint: str = config["endpoint"].rstrip("/")
        self.version: Optional[str] = config.get("version")
        # Plain http has no certificate to verify
        self.allow_insecure: bool = config.get("allow_insecure", not self.endpoint.startswith("https"))
        self.auth_type = next(method for method in AuthMethod if method.name.lower() in config)
        self.auth_details: Dict[str, Any] = config[self.auth_type.name.lower()] or {}
        self.client_options = client_options
        self._auth: Optional[requests.auth.AuthBase] = None
        logger.info(f"Cluster {self.endpoint} configured with {self.auth_type.name.lower()}")

    def basic_credentials(self) -> BasicCredentials:
        """Inline credentials, or both halves read from the secret named by `user_secret_arn`."""
        assert self.auth_type == AuthMethod.BASIC_AUTH
        if "user_secret_arn" not in self.auth_details:
            return BasicCredentials(self.auth_details["username"], self.auth_details["password"])

        arn = self.auth_details["user_secret_arn"]
        client = create_boto3_client("secretsmanager", client_options=self.client_options)
        try:
            secret = json.loads(client.get_secret_value(SecretId=arn)["SecretString"])
        except json.JSONDecodeError as e:
            raise ValueError(f"Secret {arn} must be a JSON object with username and password fields") from e
        if not isinstance(secret, dict):
            raise ValueError(f"Secret {arn} must be a JSON object with username and password fields")
        missing = [key for key in BasicCredentials._fields if key not in secret]
        if missing:
            raise ValueError(f"Secret {arn} is missing required key(s): {', '.join(missing)}")
        return BasicCredentials(secret["username"], secret["password"])

    def sigv4_signing_scope(self, resolve_region: bool = False) -> tuple[str, Optional[str]]:
        """
        (service, region) to sign with. With resolve_region, a region missing from the config is taken from the
        boto3 session, which needs AWS configuration to be available.
        """
        assert self.auth_type == AuthMethod.SIGV4
        service = self.auth_details.get("service", DEFAULT_SIGV4_SERVICE)
        region = self.auth_details.get("region")
        if region is None and resolve_region:
            region = boto3.session.Session().region_name
        return service, region

    @property
    def auth(self) -> Optional[requests.auth.AuthBase]:
        # Built on first use, then shared by every later request
        if self._auth is None:
            if self.auth_type == AuthMethod.BASIC_AUTH:
                self._auth = requests.auth.HTTPBasicAuth(*self.basic_credentials())
            elif self.auth_type == AuthMethod.SIGV4:
                self._auth = SigV4AuthPlugin(*self.sigv4_signing_scope(resolve_region=True))
        return self._auth

    def call_api(self, path: str, method: HttpMethod = HttpMethod.GET, data: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None, raise_error: bool = True,
                 params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """
        Send one request to the cluster. With raise_error=False the response is returned whatever its status.
        """
        options = self.client_options
        if options and options.user_agent_extra:
            headers = with_user_agent_extra(headers, options.user_agent_extra)
        if timeout is None and options:
            timeout = options.request_timeout_seconds

        url = f"{self.endpoint}{path}"
        r = (session or requests.Session()).request(method.name, url, params=params or {}, data=data,
                                                    headers=headers, auth=self.auth,
                                                    verify=not self.allow_insecure, timeout=timeout)
        logger.info(f"{method.name} {url} -> {r.status_code} {r.text[:500]}")
        if raise_error:
            r.raise_for_status()
        return r
