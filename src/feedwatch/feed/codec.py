"""Decoding raw change stream documents into ChangeEvents."""

from __future__ import annotations

from typing import Any, Mapping

from feedwatch.core.exceptions import StreamInterruptedError
from feedwatch.core.types import ChangeEvent, OperationType


def decode_change(
    change: Mapping[str, Any],
    database: str = "",
    collection: str = "",
) -> ChangeEvent:
    """
    Parse a raw change stream document.

    Args:
        change: The document as returned by the server.
        database: Database to assume when the document has no ``ns``.
        collection: Collection to assume when the document has no ``ns``.

    Returns:
        The decoded event.

    Raises:
        StreamInterruptedError: If the document carries no resume token.
    """
    token = change.get("_id")
    if token is None:
        # A $project that strips _id makes the stream unresumable
        raise StreamInterruptedError(
            "Change document has no resume token",
            f"{database}.{collection}" if database else None,
        )

    ns = change.get("ns") or {}
    path = [str(ns.get("db") or database), str(ns.get("coll") or collection)]

    document_key = change.get("documentKey") or {}
    if "_id" in document_key:
        path.append(str(document_key["_id"]))

    kwargs: dict[str, Any] = {}
    if change.get("wallTime") is not None:
        kwargs["wall_time"] = change["wallTime"]

    return ChangeEvent(
        operation=OperationType.parse(change.get("operationType")),
        resource_path=tuple(path),
        payload=dict(change.get("fullDocument") or {}),
        position=token,
        update_description=change.get("updateDescription"),
        cluster_time=change.get("clusterTime"),
        **kwargs,
    )
