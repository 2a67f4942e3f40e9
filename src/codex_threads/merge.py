"""Reconciliation of re-fetched thread history with locally streamed items.

A resumed thread snapshot is authoritative for ordering and membership, but the
backend's persistence can lag the live stream. Content length is used as the
richness proxy: a partial or empty string is always shorter than the completed
one, so the longer version of an item is the one to keep.
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import ConversationItem, MessageItem, ReasoningItem, ToolItem


def choose_richer_item(
    remote: ConversationItem,
    local: ConversationItem,
) -> ConversationItem:
    """Pick the richer of two versions of the same item.

    Remote wins ties and variant mismatches. Tool items combine fields: the
    longer output wins the base, while `status` and `changes` come from remote
    whenever remote reports them. A missing `detail` is filled from the other
    version.
    """
    if isinstance(remote, MessageItem) and isinstance(local, MessageItem):
        return local if len(local.text) > len(remote.text) else remote

    if isinstance(remote, ReasoningItem) and isinstance(local, ReasoningItem):
        remote_length = len(remote.summary) + len(remote.content)
        local_length = len(local.summary) + len(local.content)
        return local if local_length > remote_length else remote

    if isinstance(remote, ToolItem) and isinstance(local, ToolItem):
        local_is_longer = len(local.output or "") > len(remote.output or "")
        base, other = (local, remote) if local_is_longer else (remote, local)
        return base.model_copy(
            update={
                "status": remote.status if remote.status is not None else local.status,
                "output": local.output if local_is_longer else remote.output,
                "detail": base.detail if base.detail is not None else other.detail,
                "changes": remote.changes if remote.changes is not None else local.changes,
            }
        )

    return remote


def merge_thread_items(
    remote_items: Sequence[ConversationItem],
    local_items: Sequence[ConversationItem],
) -> list[ConversationItem]:
    """Merge an authoritative item list with locally accumulated items.

    The result keeps remote order and membership, replaces shared ids by the
    richer version, then appends local-only ids in their local order. With no
    local items the remote list is returned as given.
    """
    if not local_items:
        return remote_items if isinstance(remote_items, list) else list(remote_items)

    local_by_id: dict[str, ConversationItem] = {}
    for item in local_items:
        local_by_id.setdefault(item.id, item)

    remote_ids = {item.id for item in remote_items}
    merged: list[ConversationItem] = []
    for item in remote_items:
        local = local_by_id.get(item.id)
        merged.append(choose_richer_item(item, local) if local is not None else item)

    merged.extend(item for item in local_items if item.id not in remote_ids)
    return merged
