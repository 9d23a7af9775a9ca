from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import httpx
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_fixed

from .config import DEFAULT_GATEWAY_URL, DEFAULT_REGISTRY_PROCESS_ID, DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .errors import BundleNotFound, NetworkError, RegistryHTTPError, TransientError

logger = logging.getLogger(__name__)

METADATA_MAX_ATTEMPTS = 2
METADATA_RETRY_DELAY_S = 5.0

_BUNDLE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_RETRYABLE_STATUS = {408, 429}


@dataclass(frozen=True)
class SkillMetadata:
    name: str
    version: str
    bundle_id: str
    dependencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class BundlePayload:
    content: bytes
    content_type: str | None = None
    declared_length: int | None = None


class MetadataClient(Protocol):
    def lookup(self, name: str) -> SkillMetadata | None:
        ...


class BundleStore(Protocol):
    def get(self, bundle_id: str) -> BundlePayload:
        ...


def retrying(
    *,
    max_attempts: int,
    wait: Any,
    sleep: Callable[[float], None] = time.sleep,
) -> Retrying:
    """Retry only TransientError; anything else propagates on the first attempt."""
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        retry=retry_if_exception_type(TransientError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )


def exponential_wait(base_s: float) -> Any:
    # base, 2*base, 4*base, ...
    return wait_exponential(multiplier=base_s, min=base_s, max=base_s * 8)


class RegistryHTTP:
    """
    Thin httpx wrapper shared by the metadata client and the bundle store.

    Failures are split in two: transport problems and 408/429/5xx responses raise
    TransientError, every other status >= 400 raises RegistryHTTPError.
    """

    def __init__(self, *, timeout_s: float = DEFAULT_TIMEOUT_S, transport: httpx.BaseTransport | None = None) -> None:
        self.timeout_s = timeout_s
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryHTTP":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, url: str, *, params: Mapping[str, Any] | None = None) -> httpx.Response:
        try:
            resp = self._http.get(url, params=dict(params) if params else None)
        except httpx.TimeoutException as e:
            raise TransientError(f"Request to {url} timed out after {self.timeout_s:g}s") from e
        except httpx.TransportError as e:
            raise TransientError(f"Request to {url} failed: {e}") from e

        if resp.status_code >= 500 or resp.status_code in _RETRYABLE_STATUS:
            raise TransientError(f"{url} returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise RegistryHTTPError(resp.status_code, resp.text)
        return resp


def _dependency_names(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[str] = []
    for item in raw:
        if isinstance(item, dict):
            item = item.get("name")
        if not isinstance(item, str):
            continue
        name = item.strip()
        if name and name not in out:
            out.append(name)
    return tuple(out)


def parse_skill_metadata(obj: Any) -> SkillMetadata | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("name")
    version = obj.get("version")
    bundle_id = obj.get("arweaveTxId") or obj.get("bundleId")
    if not all(isinstance(v, str) and v.strip() for v in (name, version, bundle_id)):
        return None
    return SkillMetadata(
        name=name.strip(),
        version=version.strip(),
        bundle_id=bundle_id.strip(),
        dependencies=_dependency_names(obj.get("dependencies")),
    )


class RegistryMetadataClient:
    """
    Read-only registry lookups over the HyperBEAM dynamic-read endpoint.

    Results, including "not found", are cached for the lifetime of the instance,
    so one resolution never fetches the same name twice.
    """

    def __init__(
        self,
        http: RegistryHTTP,
        *,
        registry_url: str = DEFAULT_REGISTRY_URL,
        process_id: str = DEFAULT_REGISTRY_PROCESS_ID,
        max_attempts: int = METADATA_MAX_ATTEMPTS,
        retry_delay_s: float = METADATA_RETRY_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._http = http
        self._url = f"{registry_url.rstrip('/')}/{process_id}~process@1.0/now/~lua@5.3a/getSkill/serialize~json@1.0"
        self._max_attempts = max_attempts
        self._retry_delay_s = retry_delay_s
        self._sleep = sleep
        self._cache: dict[str, SkillMetadata | None] = {}
        self._lock = threading.Lock()

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def lookup(self, name: str) -> SkillMetadata | None:
        with self._lock:
            if name in self._cache:
                logger.debug("metadata cache hit for %s", name)
                return self._cache[name]

        retryer = retrying(max_attempts=self._max_attempts, wait=wait_fixed(self._retry_delay_s), sleep=self._sleep)
        try:
            result = retryer(self._lookup_once, name)
        except TransientError as e:
            raise NetworkError(
                f"Registry lookup for {name!r} failed after {self._max_attempts} attempts: {e}", target=name
            ) from e

        with self._lock:
            self._cache[name] = result
        return result

    def _lookup_once(self, name: str) -> SkillMetadata | None:
        logger.debug("looking up %s in registry", name)
        try:
            resp = self._http.get(self._url, params={"name": name})
        except RegistryHTTPError as e:
            if e.status_code == 404:
                return None
            raise NetworkError(f"Registry lookup for {name!r} failed: HTTP {e.status_code}", target=name) from e

        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise NetworkError(f"Registry returned invalid JSON for {name!r}", target=name) from e

        if isinstance(data, dict) and data.get("status") == 404:
            return None
        skill = data.get("skill") if isinstance(data, dict) and "skill" in data else data
        if skill is None:
            return None
        metadata = parse_skill_metadata(skill)
        if metadata is None:
            raise NetworkError(f"Registry returned malformed metadata for {name!r}", target=name)
        return metadata


class StaticMetadataClient:
    """In-memory registry, keyed by skill name. Counts lookups per name."""

    def __init__(self, skills: Mapping[str, SkillMetadata] | None = None) -> None:
        self._skills = dict(skills or {})
        self.calls: dict[str, int] = {}
        self._lock = threading.Lock()

    def add(self, metadata: SkillMetadata) -> None:
        self._skills[metadata.name] = metadata

    def lookup(self, name: str) -> SkillMetadata | None:
        with self._lock:
            self.calls[name] = self.calls.get(name, 0) + 1
        return self._skills.get(name)


class GatewayBundleStore:
    """Content-addressed bundle downloads: GET {gateway}/{bundle_id}."""

    def __init__(self, http: RegistryHTTP, *, gateway_url: str = DEFAULT_GATEWAY_URL) -> None:
        self._http = http
        self._gateway_url = gateway_url.rstrip("/")

    def get(self, bundle_id: str) -> BundlePayload:
        if not _BUNDLE_ID_RE.match(bundle_id):
            raise BundleNotFound(bundle_id)
        url = f"{self._gateway_url}/{bundle_id}"
        try:
            resp = self._http.get(url)
        except RegistryHTTPError as e:
            if e.status_code == 404:
                raise BundleNotFound(bundle_id) from e
            raise NetworkError(f"Gateway returned HTTP {e.status_code} for bundle {bundle_id}", target=bundle_id) from e

        declared: int | None = None
        raw_length = resp.headers.get("content-length")
        # Content-Length describes the encoded body when a transfer encoding was applied.
        encoded = resp.headers.get("content-encoding", "identity").lower() != "identity"
        if raw_length is not None and not encoded:
            try:
                declared = int(raw_length)
            except ValueError:
                declared = -1
        return BundlePayload(
            content=resp.content,
            content_type=resp.headers.get("content-type"),
            declared_length=declared,
        )
