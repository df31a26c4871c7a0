from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

from index_migrator.models.cluster import Cluster, HttpMethod
from index_migrator.models.errors import (EngineRejected, EngineUnavailable, GenerationAlreadyExists,
                                          GenerationNotFound)

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}
NDJSON_HEADERS = {"Content-Type": "application/x-ndjson"}

ALREADY_EXISTS_ERROR_TYPES = {"resource_already_exists_exception", "index_already_exists_exception"}


def _response_payload(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_reason(payload: Any) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return f"{error.get('type')}: {error.get('reason')}"
        if error is not None:
            return str(error)
    return str(payload)[:500]


def _error_type(payload: Any) -> Optional[str]:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"].get("type")
    return None


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


class SearchEngine:
    """
    The engine primitives the migration subsystem relies on: index and alias administration, the native
    reindex and update-by-query operations, task status lookup and counting.

    HTTP outcomes are translated into the migration error taxonomy: transport failures and 5xx responses
    raise EngineUnavailable, other non-2xx responses raise EngineRejected. Lookups where "not found" is a
    legitimate answer (existence checks, idempotent deletes, task status) report it as a value instead.
    """

    def __init__(self, cluster: Cluster, request_timeout: Optional[float] = None) -> None:
        self.cluster = cluster
        self.request_timeout = request_timeout
        self.session = requests.Session()

    def _request(self, path: str, method: HttpMethod = HttpMethod.GET, body: Any = None,
                 params: Optional[Dict[str, Any]] = None, allow_statuses: Iterable[int] = (),
                 data: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        if body is not None:
            data = json.dumps(body)
            headers = JSON_HEADERS
        try:
            r = self.cluster.call_api(path, method, data=data, headers=headers, timeout=self.request_timeout,
                                      session=self.session, raise_error=False, params=params or {})
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise EngineUnavailable(f"{method.name} {path}: {e}") from e
        if r.ok or r.status_code in allow_statuses:
            return r
        payload = _response_payload(r)
        if r.status_code >= 500:
            raise EngineUnavailable(f"{method.name} {path} returned {r.status_code}: {_error_reason(payload)}",
                                    status_code=r.status_code)
        raise EngineRejected(f"{method.name} {path} returned {r.status_code}: {_error_reason(payload)}",
                             status_code=r.status_code, payload=payload)

    def info(self) -> Dict:
        return self._request("/").json()

    def index_exists(self, name: str) -> bool:
        r = self._request(f"/{name}", HttpMethod.HEAD, allow_statuses=(404,))
        return r.status_code == 200

    def alias_exists(self, name: str) -> bool:
        r = self._request(f"/_alias/{name}", HttpMethod.HEAD, allow_statuses=(404,))
        return r.status_code == 200

    def get_alias_targets(self, alias: str) -> List[str]:
        """Concrete indices the alias currently resolves to, empty when there is no such alias."""
        r = self._request(f"/_alias/{alias}", allow_statuses=(404,))
        if r.status_code == 404:
            return []
        return sorted(index for index, details in r.json().items() if alias in details.get("aliases", {}))

    def get_aliases_for_index(self, index: str) -> List[str]:
        r = self._request(f"/{index}/_alias", allow_statuses=(404,))
        if r.status_code == 404:
            return []
        aliases = set()
        for details in r.json().values():
            aliases.update(details.get("aliases", {}).keys())
        return sorted(aliases)

    def create_index(self, name: str, mappings: Dict, settings: Optional[Dict] = None) -> Dict:
        body: Dict[str, Any] = {"mappings": mappings}
        if settings:
            body["settings"] = settings
        try:
            return self._request(f"/{name}", HttpMethod.PUT, body=body).json()
        except EngineRejected as e:
            error_type = _error_type(e.payload)
            reason = _error_reason(e.payload)
            if error_type in ALREADY_EXISTS_ERROR_TYPES or (
                    error_type == "invalid_index_name_exception" and "already exists as alias" in reason):
                raise GenerationAlreadyExists(name) from e
            raise

    def delete_index(self, name: str) -> bool:
        """Delete an index, returning False when it did not exist."""
        r = self._request(f"/{name}", HttpMethod.DELETE, allow_statuses=(404,))
        return r.status_code != 404

    def get_mapping(self, name: str) -> Dict:
        """The mapping of a single index. An alias name resolves to the mapping of the index behind it."""
        r = self._request(f"/{name}/_mapping", allow_statuses=(404,))
        if r.status_code == 404:
            raise GenerationNotFound(name)
        indices = r.json()
        if len(indices) != 1:
            raise EngineRejected(f"'{name}' resolves to {len(indices)} indices; expected exactly one",
                                 payload=sorted(indices.keys()))
        return next(iter(indices.values())).get("mappings", {})

    def put_mapping(self, name: str, body: Dict) -> Dict:
        return self._request(f"/{name}/_mapping", HttpMethod.PUT, body=body).json()

    def update_aliases(self, actions: List[Dict]) -> Dict:
        """Apply all alias actions in a single, atomic engine call."""
        return self._request("/_aliases", HttpMethod.POST, body={"actions": actions}).json()

    def reindex(self, source: str, dest: str, script: Optional[Dict] = None, wait_for_completion: bool = False,
                batch_size: Optional[int] = None, requests_per_second: Optional[float] = None,
                slices: Optional[int | str] = None, refresh: bool = True) -> Dict:
        body: Dict[str, Any] = {"source": {"index": source}, "dest": {"index": dest}}
        if batch_size:
            body["source"]["size"] = batch_size
        if script:
            body["script"] = script
        params: Dict[str, Any] = {"wait_for_completion": _bool_param(wait_for_completion),
                                  "refresh": _bool_param(refresh)}
        if requests_per_second is not None:
            params["requests_per_second"] = requests_per_second
        if slices is not None:
            params["slices"] = slices
        return self._request("/_reindex", HttpMethod.POST, body=body, params=params).json()

    def update_by_query(self, index: str, script: Dict, query: Dict, wait_for_completion: bool = False,
                        conflicts: str = "proceed", scroll_size: Optional[int] = None,
                        refresh: bool = True) -> Dict:
        params: Dict[str, Any] = {"wait_for_completion": _bool_param(wait_for_completion),
                                  "conflicts": conflicts,
                                  "refresh": _bool_param(refresh)}
        if scroll_size:
            params["scroll_size"] = scroll_size
        return self._request(f"/{index}/_update_by_query", HttpMethod.POST,
                             body={"script": script, "query": query}, params=params).json()

    def get_task(self, task_id: str) -> Optional[Dict]:
        """
        Raw task status. None means the engine has no record of the task (yet), which is common right after
        submission; an unparseable body is reported as an empty dict.
        """
        r = self._request(f"/_tasks/{task_id}", allow_statuses=(404,))
        if r.status_code == 404:
            return None
        payload = _response_payload(r)
        return payload if isinstance(payload, dict) else {}

    def count(self, index: str, query: Optional[Dict] = None) -> int:
        body = {"query": query} if query else None
        r = self._request(f"/{index}/_count", HttpMethod.POST, body=body, allow_statuses=(404,))
        if r.status_code == 404:
            raise GenerationNotFound(index)
        return int(r.json()["count"])

    def refresh(self, index: str) -> None:
        self._request(f"/{index}/_refresh", HttpMethod.POST)

    def list_indices(self, pattern: str) -> List[str]:
        r = self._request(f"/_cat/indices/{pattern}", params={"format": "json", "h": "index"},
                          allow_statuses=(404,))
        if r.status_code == 404:
            return []
        return sorted(row["index"] for row in r.json())

    def get_index_creation_date(self, name: str) -> Optional[datetime]:
        r = self._request(f"/{name}/_settings", allow_statuses=(404,))
        if r.status_code == 404:
            raise GenerationNotFound(name)
        for details in r.json().values():
            millis = details.get("settings", {}).get("index", {}).get("creation_date")
            if millis is not None:
                return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
        return None

    def bulk(self, operations: List[Dict], refresh: bool = False) -> Dict:
        data = "".join(json.dumps(op) + "\n" for op in operations)
        return self._request("/_bulk", HttpMethod.POST, data=data, headers=NDJSON_HEADERS,
                             params={"refresh": _bool_param(refresh)}).json()
