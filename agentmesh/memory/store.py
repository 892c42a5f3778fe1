"""Agent memory: key/value entries plus a vector index for similarity recall."""
from __future__ import annotations

import itertools
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from agentmesh.core.errors import InitializationError, NotFoundError
from agentmesh.core.models import MemoryEntry, MemoryQuery, MemoryType, utcnow
from agentmesh.memory.kv_store import KeyValueStore
from agentmesh.memory.vector_index import VectorIndex

logger = structlog.get_logger(__name__)

_SORT_KEYS = {
    "timestamp": lambda entry: entry.timestamp,
    "importance": lambda entry: entry.importance,
    "confidence": lambda entry: entry.confidence,
}


class MemoryStore:
    """Memory system combining a TTL-aware key/value store and a vector index.

    Entries are keyed by id in the key/value store. Entries carrying an
    embedding are also indexed for ``search_similar``; their vector metadata
    holds the owning agent, the type tag and the entry's own metadata so
    searches can be filtered on any of them. When a TTL expires the entry's
    vector and ordering slot are dropped along with it.
    """

    def __init__(
        self,
        dimension: int = 384,
        *,
        max_entries: Optional[int] = None,
        default_ttl: Optional[float] = None,
        kv_store: Optional[KeyValueStore] = None,
    ) -> None:
        self._kv = kv_store or KeyValueStore()
        self._kv.add_expiry_listener(self._forget_index)
        self._vectors = VectorIndex(dimension)
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._counter = itertools.count()
        self._sequence: Dict[str, int] = {}
        self._initialized = False

    @property
    def dimension(self) -> int:
        return self._vectors.dimension

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def indexed(self) -> int:
        """Number of entries currently held in the vector index."""
        return len(self._vectors)

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        logger.debug("memory_store_initialized", dimension=self.dimension)

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self._kv.clear()
        self._vectors.clear()
        self._sequence.clear()
        self._initialized = False

    async def store(self, entry: MemoryEntry, ttl: Optional[float] = None) -> str:
        """Persist an entry and index its embedding; returns the entry id."""
        self._ensure_initialized()
        ttl = ttl if ttl is not None else self._default_ttl
        if ttl:
            entry.expires_at = utcnow() + timedelta(seconds=ttl)
        if entry.embedding is not None:
            # Validates the dimension before anything is written.
            self._vectors.add(entry.id, entry.embedding, self._vector_metadata(entry))
        else:
            self._vectors.delete(entry.id)
        await self._kv.set(entry.id, entry, ttl=ttl)
        self._sequence[entry.id] = next(self._counter)
        await self._evict_if_needed()
        return entry.id

    async def retrieve(self, entry_id: str) -> Optional[MemoryEntry]:
        self._ensure_initialized()
        entry = await self._kv.get(entry_id)
        if entry is None:
            self._forget_index(entry_id)
            return None
        entry.touch()
        return entry

    async def update(self, entry_id: str, **changes: Any) -> MemoryEntry:
        self._ensure_initialized()
        entry = await self._kv.get(entry_id)
        if entry is None:
            raise NotFoundError("Memory entry", entry_id)
        immutable = {"id", "agent_id", "version"} & changes.keys()
        if immutable:
            raise ValueError(f"Memory entry field {sorted(immutable)[0]!r} is immutable")
        embedding = changes.get("embedding", entry.embedding)
        if embedding is not None:
            # Nothing is written when the new embedding does not fit the index.
            self._vectors.validate(embedding)
        for name, value in changes.items():
            setattr(entry, name, value)
        entry.version += 1
        entry.timestamp = utcnow()
        if entry.embedding is not None:
            self._vectors.add(entry.id, entry.embedding, self._vector_metadata(entry))
        else:
            self._vectors.delete(entry.id)
        return entry

    async def delete(self, entry_id: str) -> bool:
        self._ensure_initialized()
        self._forget_index(entry_id)
        return await self._kv.delete(entry_id)

    async def size(self) -> int:
        return await self._kv.size()

    async def search(self, query: MemoryQuery) -> List[MemoryEntry]:
        self._ensure_initialized()
        now = utcnow()
        results = [entry for entry in await self._entries() if self._matches(entry, query, now)]
        sort_key = _SORT_KEYS.get(query.sort_by)
        if sort_key is None:
            raise ValueError(f"Unsupported sort key: {query.sort_by}")
        results.sort(
            key=lambda entry: (sort_key(entry), self._sequence.get(entry.id, -1)),
            reverse=query.descending,
        )
        end = query.offset + query.limit if query.limit is not None else None
        return results[query.offset:end]

    async def get_by_tag(self, tag: str) -> List[MemoryEntry]:
        """Entries carrying ``tag``, most recent first."""
        return await self.search(MemoryQuery(tags=[tag]))

    async def get_by_agent(self, agent_id: str) -> List[MemoryEntry]:
        return await self.search(MemoryQuery(agent_id=agent_id))

    async def get_by_type(self, memory_type: MemoryType) -> List[MemoryEntry]:
        return await self.search(MemoryQuery(type=memory_type))

    async def search_similar(
        self,
        vector: Sequence[float],
        k: int = 10,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Tuple[MemoryEntry, float]]:
        """Nearest entries by cosine similarity of their embeddings."""
        self._ensure_initialized()
        matches: List[Tuple[MemoryEntry, float]] = []
        # Over-fetch so entries expired in the key/value store do not shrink the page.
        for result in self._vectors.search_similar(vector, len(self._vectors), filter):
            entry = await self._kv.get(result.id)
            if entry is None:
                self._forget_index(result.id)
                continue
            matches.append((entry, result.score))
            if len(matches) >= k:
                break
        return matches

    async def find_similar(self, entry: MemoryEntry, limit: int = 10) -> List[MemoryEntry]:
        """Heuristic neighbours of ``entry`` by shared type, tags and owner."""
        self._ensure_initialized()
        scored = []
        for candidate in await self._entries():
            if candidate.id == entry.id:
                continue
            score = _overlap_score(entry, candidate)
            if score > 0:
                scored.append((score, self._sequence.get(candidate.id, -1), candidate))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [candidate for _, _, candidate in scored[:limit]]

    async def cleanup(self) -> int:
        """Drop expired entries; returns how many were removed."""
        self._ensure_initialized()
        now = utcnow()
        removed = 0
        for key in await self._kv.keys():
            entry = await self._kv.get(key)
            if entry is not None and entry.is_expired(now):
                await self.delete(key)
                removed += 1
        return removed

    async def _evict_if_needed(self) -> None:
        if not self._max_entries:
            return
        keys = await self._kv.keys()
        overflow = len(keys) - self._max_entries
        if overflow <= 0:
            return
        oldest = sorted(
            await self._entries(),
            key=lambda entry: (entry.timestamp, self._sequence.get(entry.id, -1)),
        )
        for entry in oldest[:overflow]:
            await self.delete(entry.id)
        logger.debug("memory_entries_evicted", count=overflow)

    async def _entries(self) -> List[MemoryEntry]:
        entries = []
        for key in await self._kv.keys():
            entry = await self._kv.get(key)
            if entry is not None:
                entries.append(entry)
        return entries

    @staticmethod
    def _matches(entry: MemoryEntry, query: MemoryQuery, now) -> bool:
        if query.text and query.text.lower() not in str(entry.content).lower():
            return False
        if query.tags and not any(tag in entry.tags for tag in query.tags):
            return False
        if query.agent_id is not None and entry.agent_id != query.agent_id:
            return False
        if query.type is not None and entry.type != query.type:
            return False
        if query.min_importance is not None and entry.importance < query.min_importance:
            return False
        if query.max_importance is not None and entry.importance > query.max_importance:
            return False
        if query.since is not None and entry.timestamp < query.since:
            return False
        if query.until is not None and entry.timestamp > query.until:
            return False
        if not query.include_expired and entry.is_expired(now):
            return False
        return True

    @staticmethod
    def _vector_metadata(entry: MemoryEntry) -> Dict[str, Any]:
        metadata = dict(entry.metadata)
        metadata.update(agent_id=entry.agent_id, type=entry.type.value)
        return metadata

    def _forget_index(self, entry_id: str) -> None:
        self._vectors.delete(entry_id)
        self._sequence.pop(entry_id, None)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise InitializationError("MemoryStore not initialized")


def _overlap_score(a: MemoryEntry, b: MemoryEntry) -> float:
    score = 0.0
    if a.type == b.type:
        score += 0.3
    widest = max(len(a.tags), len(b.tags))
    if widest:
        score += len(set(a.tags) & set(b.tags)) / widest * 0.4
    if a.agent_id == b.agent_id:
        score += 0.2
    return score
