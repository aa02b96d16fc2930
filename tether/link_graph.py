"""
Undirected links between entities of any kind.

Edges are stored as one row with canonically ordered endpoints: the
smaller (kind, id) is always the source. That makes the table's UNIQUE
constraint cover both directions, so inserting A-B after B-A is a no-op.

Related-item expansion walks the graph breadth-first up to a fixed depth
and returns a flat set: callers cannot tell a 1-hop neighbour from a
2-hop one.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .config import DEFAULT_EXPAND_DEPTH
from .database import Database
from .entity_store import EntityStore
from .types import EntityKind, EntityRef

logger = logging.getLogger(__name__)


def canonical_pair(a: EntityRef, b: EntityRef) -> tuple[EntityRef, EntityRef]:
    """Order two endpoints by the (kind, id) total order."""
    return (a, b) if a.sort_key <= b.sort_key else (b, a)


class LinkGraph:
    """
    Adjacency over entity refs, backed by the links table.

    Args:
        db: Shared database handle
        entities: Used to drop dangling endpoints from expansions
        default_depth: Hops followed by expand() when no depth is given
    """

    def __init__(
        self,
        db: Database,
        entities: EntityStore,
        *,
        default_depth: int = DEFAULT_EXPAND_DEPTH,
    ):
        self._db = db
        self._entities = entities
        self.default_depth = default_depth

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def add_edge(self, a: EntityRef, b: EntityRef) -> bool:
        """
        Link two entities. Idempotent and order-independent.

        Self-edges are silently ignored.

        Returns:
            True if a new edge was stored
        """
        if a == b:
            return False
        source, target = canonical_pair(a, b)
        cursor = self._db.execute(
            """
            INSERT OR IGNORE INTO links (source_kind, source_id, target_kind, target_id)
            VALUES (?, ?, ?, ?)
            """,
            (source.kind.value, source.id, target.kind.value, target.id),
        )
        added = cursor.rowcount > 0
        if added:
            logger.info("Linked %s <-> %s", source, target)
        return added

    def remove_edge(self, a: EntityRef, b: EntityRef) -> bool:
        """
        Unlink two entities, whichever was recorded as source.

        Returns:
            True if an edge existed and was removed
        """
        source, target = canonical_pair(a, b)
        cursor = self._db.execute(
            """
            DELETE FROM links
            WHERE source_kind = ? AND source_id = ? AND target_kind = ? AND target_id = ?
            """,
            (source.kind.value, source.id, target.kind.value, target.id),
        )
        removed = cursor.rowcount > 0
        if removed:
            logger.info("Unlinked %s <-> %s", source, target)
        return removed

    def remove_all(self, ref: EntityRef) -> int:
        """Delete every edge touching an entity. Returns the number removed."""
        cursor = self._db.execute(
            """
            DELETE FROM links
            WHERE (source_kind = ? AND source_id = ?) OR (target_kind = ? AND target_id = ?)
            """,
            (ref.kind.value, ref.id, ref.kind.value, ref.id),
        )
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def has_edge(self, a: EntityRef, b: EntityRef) -> bool:
        source, target = canonical_pair(a, b)
        row = self._db.fetchone(
            """
            SELECT 1 FROM links
            WHERE source_kind = ? AND source_id = ? AND target_kind = ? AND target_id = ?
            """,
            (source.kind.value, source.id, target.kind.value, target.id),
        )
        return row is not None

    def neighbors(self, ref: EntityRef) -> set[EntityRef]:
        """All refs with a direct edge to `ref`, whether or not they still exist."""
        rows = self._db.fetchall(
            """
            SELECT target_kind AS kind, target_id AS id FROM links
            WHERE source_kind = ? AND source_id = ?
            UNION
            SELECT source_kind AS kind, source_id AS id FROM links
            WHERE target_kind = ? AND target_id = ?
            """,
            (ref.kind.value, ref.id, ref.kind.value, ref.id),
        )
        result = set()
        for row in rows:
            try:
                result.add(EntityRef(EntityKind(row["kind"]), row["id"]))
            except ValueError:
                logger.debug("Skipping link to unknown kind %r", row["kind"])
        return result

    def expand(self, ref: EntityRef, depth: Optional[int] = None) -> set[EntityRef]:
        """
        Related items: every entity within `depth` hops, flattened.

        Excludes `ref` itself. Endpoints whose entity no longer exists are
        dropped from the result, but still traversed.

        Args:
            ref: Starting entity
            depth: Hops to follow (default: the graph's default_depth)

        Raises:
            ValueError: If depth is less than 1
        """
        depth = self.default_depth if depth is None else depth
        if depth < 1:
            raise ValueError(f"Expansion depth must be at least 1: {depth}")

        seen = {ref}
        frontier = {ref}
        for _ in range(depth):
            reached: set[EntityRef] = set()
            for node in frontier:
                reached |= self.neighbors(node)
            frontier = reached - seen
            if not frontier:
                break
            seen |= frontier

        seen.discard(ref)
        return self._existing(seen)

    def _existing(self, refs: Iterable[EntityRef]) -> set[EntityRef]:
        """Filter refs down to entities present in the entity store."""
        by_kind: dict[EntityKind, list[str]] = {}
        for r in refs:
            by_kind.setdefault(r.kind, []).append(r.id)
        result = set()
        for kind, ids in by_kind.items():
            found = self._entities.get_many(kind, ids)
            result.update(EntityRef(kind, id) for id in found)
        return result

    def edge_count(self) -> int:
        return self._db.fetchone("SELECT COUNT(*) FROM links")[0]
