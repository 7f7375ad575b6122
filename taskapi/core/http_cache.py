"""
HTTP Caching
============

ETag generation and conditional-request helpers.

Works against anything exposing a ``headers`` mapping, so Starlette's
``Request`` / ``Response`` fit without this module importing them.
"""

import hashlib
import json
import logging
import time
from datetime import datetime
from email.utils import format_datetime
from typing import Any, Iterable, Mapping, MutableMapping, Protocol

from pydantic import BaseModel

from taskapi.utils.helpers import ensure_utc, to_unix_nanos

logger = logging.getLogger(__name__)

NO_STORE = "no-cache, no-store, must-revalidate"


class HeaderSource(Protocol):
    headers: Mapping[str, str]


class HeaderSink(Protocol):
    headers: MutableMapping[str, str]


class TaskLike(Protocol):
    id: int
    title: str
    done: bool
    updated_at: datetime


def _quote(digest: str) -> str:
    return f'"{digest}"'


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def generate_etag(value: Any) -> str:
    """
    Strong ETag: SHA-256 over the canonical JSON of *value*.

    If *value* cannot be serialized, a tag derived from the current time
    is returned instead so callers always get a usable opaque value.
    """
    try:
        canonical = json.dumps(
            _jsonable(value),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
    except (TypeError, ValueError) as exc:
        logger.warning("ETag canonicalization failed, using time-based tag: %s", exc)
        canonical = str(time.time_ns())
    return _quote(hashlib.sha256(canonical.encode("utf-8")).hexdigest())


def generate_etag_from_tasks(tasks: Iterable[TaskLike]) -> str:
    """
    ETag for an ordered task collection.

    Hashes ``<id>-<title>-<done>-<updated_at unix nanos>`` per task in
    iteration order; reordering the same tasks changes the tag.
    """
    digest = hashlib.sha256()
    for task in tasks:
        done = "true" if task.done else "false"
        digest.update(
            f"{task.id}-{task.title}-{done}-{to_unix_nanos(task.updated_at)}".encode("utf-8")
        )
    return _quote(digest.hexdigest())


def set_etag(response: HeaderSink, tag: str) -> None:
    """Set the ETag header if value is not empty."""
    if tag:
        response.headers["ETag"] = tag


def set_last_modified(response: HeaderSink, when: datetime) -> None:
    response.headers["Last-Modified"] = format_datetime(ensure_utc(when), usegmt=True)


def add_cache_control(response: HeaderSink, is_mutating: bool, max_age: int) -> None:
    """
    Set cache-control headers.

    Mutating responses must never be cached; reads may be cached privately
    and vary on the caller's credentials.
    """
    if is_mutating:
        response.headers["Cache-Control"] = NO_STORE
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
    else:
        response.headers["Cache-Control"] = f"private, max-age={max_age}"
        response.headers["Vary"] = "Authorization"


def is_not_modified(request: HeaderSource, tag: str) -> bool:
    """
    True iff ``If-None-Match`` equals *tag* or its weak form ``W/<tag>``.

    Comparison is exact and case-sensitive; lists and ``*`` are not
    interpreted.
    """
    if not tag:
        return False
    candidate = request.headers.get("If-None-Match", "")
    if not candidate:
        return False
    return candidate == tag or candidate == f"W/{tag}"
