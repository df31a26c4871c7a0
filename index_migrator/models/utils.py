from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlparse

import boto3
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.config import Config
import requests
import requests.auth
import requests.utils

from index_migrator.models.client_options import ClientOptions

# requests may still rewrite these after the auth hook has run, so they stay out of the signature
UNSIGNED_HEADERS = {name.lower() for name in requests.utils.default_headers()}


class ExitCode(Enum):
    SUCCESS = 0
    FAILURE = 1


def create_boto3_client(aws_service_name: str, region: Optional[str] = None,
                        client_options: Optional[ClientOptions] = None):
    extra = client_options.user_agent_extra if client_options else None
    return boto3.client(aws_service_name, region_name=region,
                        config=Config(user_agent_extra=extra) if extra else None)


def with_user_agent_extra(headers: Optional[Dict[str, str]], user_agent_extra: str) -> Dict[str, str]:
    merged = dict(headers or {})
    merged["User-Agent"] = f"{merged.get('User-Agent', requests.utils.default_user_agent())} {user_agent_extra}"
    return merged


class SigV4AuthPlugin(requests.auth.AuthBase):
    """Signs engine requests with AWS Signature Version 4, as IAM-protected managed domains require."""

    def __init__(self, service: str, region: Optional[str]) -> None:
        self.service = service
        self.region = region
        self.credentials = boto3.Session().get_credentials()

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        # Managed domains verify the signature against the host name without its port
        r.headers["Host"] = urlparse(r.url).hostname
        aws_request = AWSRequest(method=r.method, url=r.url, data=r.body,
                                 headers={k: v for k, v in r.headers.items() if k.lower() not in UNSIGNED_HEADERS})
        signer = SigV4Auth(self.credentials, self.service, self.region)
        if aws_request.body is not None:
            aws_request.headers["x-amz-content-sha256"] = signer.payload(aws_request)
        signer.add_auth(aws_request)
        r.headers.update(dict(aws_request.headers))
        return r
