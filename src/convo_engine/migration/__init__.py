from convo_engine.migration.part_types import (
    PART_TYPE_MAPPING,
    migrate_messages_element,
    migrate_messages_json,
    migrate_parts,
)
from convo_engine.migration.runner import (
    MigrationTracker,
    NodeStore,
    StoredNode,
    migrate_all,
    migrate_conversation,
    migrate_node_collection,
)
from convo_engine.migration.tool_parts import (
    migrate_tool_messages,
    migrate_tool_nodes,
    sort_parts_for_migration,
)

__all__ = [
    "PART_TYPE_MAPPING",
    "MigrationTracker",
    "NodeStore",
    "StoredNode",
    "migrate_all",
    "migrate_conversation",
    "migrate_messages_element",
    "migrate_messages_json",
    "migrate_node_collection",
    "migrate_parts",
    "migrate_tool_messages",
    "migrate_tool_nodes",
    "sort_parts_for_migration",
]
