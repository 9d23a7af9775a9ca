from __future__ import annotations

import logging
import time
from typing import Callable

from .client import BundlePayload, BundleStore, exponential_wait, retrying
from .errors import BundleCorrupt, BundleNotFound, NetworkError, TransientError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_S = 1.0

GZIP_MAGIC = b"\x1f\x8b"
ACCEPTED_CONTENT_TYPES = {
    "application/gzip",
    "application/x-gzip",
    "application/x-tar+gzip",
    "application/x-compressed-tar",
    "application/octet-stream",
}


def check_integrity(bundle_id: str, payload: BundlePayload, *, skill: str | None = None) -> None:
    content = payload.content
    if not content:
        raise BundleCorrupt(bundle_id, "empty payload", skill=skill)
    if payload.declared_length is not None and payload.declared_length != len(content):
        raise BundleCorrupt(
            bundle_id,
            f"declared length {payload.declared_length} but received {len(content)} bytes",
            skill=skill,
        )
    if payload.content_type:
        media_type = payload.content_type.split(";", 1)[0].strip().lower()
        if media_type not in ACCEPTED_CONTENT_TYPES:
            raise BundleCorrupt(bundle_id, f"unexpected content type {media_type!r}", skill=skill)
    if not content.startswith(GZIP_MAGIC):
        raise BundleCorrupt(bundle_id, "payload is not gzip data", skill=skill)


class BundleFetcher:
    """
    Downloads bundles with bounded retries.

    Only transient failures (timeouts, connection errors, 5xx) are retried, with
    exponential backoff. A definitive not-found or a corrupt payload fails on the
    first attempt: the id is content-addressed, so asking again returns the same bytes.
    """

    def __init__(
        self,
        store: BundleStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_s: float = DEFAULT_BACKOFF_BASE_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._backoff_base_s = backoff_base_s
        self._sleep = sleep

    def fetch(self, bundle_id: str, *, skill: str | None = None) -> bytes:
        retryer = retrying(
            max_attempts=self._max_attempts,
            wait=exponential_wait(self._backoff_base_s),
            sleep=self._sleep,
        )
        label = f"{skill} ({bundle_id})" if skill else bundle_id
        try:
            payload = retryer(self._store.get, bundle_id)
        except TransientError as e:
            raise NetworkError(
                f"Failed to download bundle {label} after {self._max_attempts} attempts: {e}",
                target=skill or bundle_id,
            ) from e
        except BundleNotFound as e:
            if skill and e.skill is None:
                raise BundleNotFound(bundle_id, skill=skill) from e
            raise

        check_integrity(bundle_id, payload, skill=skill)
        logger.debug("fetched %s: %d bytes", label, len(payload.content))
        return payload.content
