from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Protocol, Union, runtime_checkable

from loguru import logger

from convo_engine.errors import UnknownPartTypeError
from convo_engine.migration.part_types import migrate_messages_json
from convo_engine.migration.tool_parts import migrate_tool_nodes
from convo_engine.models import Message, messages_from_json, messages_to_json

TOOL_UNIFICATION_FROM_VERSION = 15
TOOL_UNIFICATION_TO_VERSION = 16


@dataclass(frozen=True)
class StoredNode:
    id: str
    node_index: int
    messages_json: str
    select_index: int = 0


@runtime_checkable
class NodeStore(Protocol):
    def list_conversation_ids(self) -> list[str]: ...

    def load_nodes(self, conversation_id: str) -> list[StoredNode]:
        """Return the conversation's nodes ordered by ``node_index``."""
        ...

    def replace_nodes(self, conversation_id: str, nodes: list[StoredNode]) -> None:
        """Atomically replace every node of the conversation."""
        ...


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Migrating:
    from_version: int
    to_version: int


MigrationState = Union[Idle, Migrating]


class MigrationTracker:
    """Observable migration state, so a UI can show progress while rows are rewritten."""

    def __init__(self) -> None:
        self._state: MigrationState = Idle()
        self._listeners: list[Callable[[MigrationState], None]] = []

    @property
    def state(self) -> MigrationState:
        return self._state

    def subscribe(self, listener: Callable[[MigrationState], None]) -> None:
        self._listeners.append(listener)

    def _set(self, state: MigrationState) -> None:
        self._state = state
        for listener in self._listeners:
            listener(state)

    @contextmanager
    def track(self, from_version: int, to_version: int) -> Iterator[None]:
        self._set(Migrating(from_version, to_version))
        try:
            yield
        finally:
            self._set(Idle())


@dataclass
class _DecodedNode:
    row: StoredNode
    normalized_json: str
    messages: list[Message] | None


def _decode(row: StoredNode) -> _DecodedNode:
    normalized = migrate_messages_json(row.messages_json)
    try:
        messages = messages_from_json(normalized)
    except (ValueError, TypeError, KeyError, AttributeError, UnknownPartTypeError) as ex:
        logger.warning(f"Leaving node {row.id} untouched, failed to decode messages: {ex}")
        messages = None
    return _DecodedNode(row=row, normalized_json=normalized, messages=messages)


def _set_messages(node: _DecodedNode, messages: list[Message]) -> _DecodedNode:
    if node.messages is None:
        return node
    return replace(node, messages=messages)


def migrate_node_collection(rows: list[StoredNode]) -> list[StoredNode]:
    """Apply type-tag normalization and tool unification to one conversation's nodes.

    Pure: returns ``rows`` itself when nothing needs rewriting.
    """
    decoded = [_decode(row) for row in rows]
    migrated = migrate_tool_nodes(
        decoded,
        get_messages=lambda n: n.messages or [],
        set_messages=_set_messages,
    )

    out: list[StoredNode] = []
    for index, node in enumerate(migrated):
        original = next((d for d in decoded if d.row.id == node.row.id), None)
        if node.messages is None or (original is not None and original.messages == node.messages):
            messages_json = node.normalized_json
        else:
            messages_json = messages_to_json(node.messages)
        select_index = node.row.select_index
        if node.messages:
            select_index = min(max(0, select_index), len(node.messages) - 1)
        out.append(
            StoredNode(
                id=node.row.id,
                node_index=index,
                messages_json=messages_json,
                select_index=select_index,
            )
        )

    return rows if out == list(rows) else out


def migrate_conversation(store: NodeStore, conversation_id: str) -> bool:
    """Migrate one conversation. Returns True when rows were rewritten."""
    rows = store.load_nodes(conversation_id)
    if not rows:
        return False
    migrated = migrate_node_collection(rows)
    if migrated is rows:
        return False
    store.replace_nodes(conversation_id, migrated)
    logger.debug(f"Migrated conversation {conversation_id}: {len(rows)} -> {len(migrated)} nodes")
    return True


def migrate_all(
    store: NodeStore,
    *,
    tracker: MigrationTracker | None = None,
    from_version: int = TOOL_UNIFICATION_FROM_VERSION,
    to_version: int = TOOL_UNIFICATION_TO_VERSION,
) -> int:
    """Migrate every conversation in ``store``. Returns the number of conversations updated."""
    tracker = tracker or MigrationTracker()
    logger.info(f"Migration {from_version} -> {to_version}: start")
    updated = 0
    with tracker.track(from_version, to_version):
        for conversation_id in store.list_conversation_ids():
            if migrate_conversation(store, conversation_id):
                updated += 1
    logger.info(f"Migration {from_version} -> {to_version}: {updated} conversation(s) updated")
    return updated
