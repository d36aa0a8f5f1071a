"""Existence checks that turn "not found" into a boolean.

Used wherever an operation must be idempotent: before linking, the
reconciler asks whether the relation already exists instead of relying on
the platform to reject a duplicate.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .client import Client, RelationKind, ResourceKind
from .context import RequestContext
from .errors import DecodeError, MaxRetriesExceededError, RequestError, TransportError
from .models import validate_uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExistenceResult:
    """Outcome of an existence probe.

    A 404 yields exists=False with no error. Any other failure yields
    exists=False together with the error.
    """

    exists: bool
    error: Exception | None = None

    def __bool__(self) -> bool:
        return self.exists

    def raise_for_error(self) -> bool:
        """Return `exists`, raising the probe error if there was one."""
        if self.error is not None:
            raise self.error
        return self.exists


async def _probe(fetch: Callable[[], Awaitable[object]]) -> ExistenceResult:
    try:
        await fetch()
    except RequestError as e:
        if e.status_code == 404:
            return ExistenceResult(exists=False)
        return ExistenceResult(exists=False, error=e)
    except (MaxRetriesExceededError, TransportError, DecodeError) as e:
        return ExistenceResult(exists=False, error=e)
    return ExistenceResult(exists=True)


async def object_exists(
    client: Client, ctx: RequestContext, kind: ResourceKind, object_id: str
) -> ExistenceResult:
    """Check whether an object of `kind` with `object_id` exists."""
    return await _probe(lambda: client.get_object(ctx, kind, object_id))


async def relation_exists(
    client: Client,
    ctx: RequestContext,
    server_id: str,
    relation: RelationKind,
    object_id: str,
) -> ExistenceResult:
    """Check whether `object_id` is linked to the server.

    The object itself is probed first: a deleted object has no relation,
    even if the server has not caught up yet.
    """
    obj = await object_exists(client, ctx, relation.object_kind, object_id)
    if not obj.exists:
        return obj
    result = await _probe(lambda: client.get_server_relation(ctx, server_id, relation, object_id))
    logger.debug(
        "Relation probe",
        extra={
            "server_id": server_id,
            "relation": relation.value,
            "object_id": object_id,
            "exists": result.exists,
        },
    )
    return result


async def block_until_active(
    client: Client,
    ctx: RequestContext,
    kind: ResourceKind,
    object_id: str,
    timeout: float | None = None,
) -> None:
    """Wait until a freshly created object has left `in-provisioning`."""
    object_id = validate_uuid(object_id, f"{kind.response_key}_id")
    await client.tracker.wait_for_object_active(
        ctx, kind.object_path(object_id), kind.response_key, timeout
    )


async def block_until_deleted(
    client: Client,
    ctx: RequestContext,
    kind: ResourceKind,
    object_id: str,
    timeout: float | None = None,
) -> None:
    """Wait until GET on the object answers 404."""
    await client.wait_for_deletion(ctx, kind, object_id, timeout)
