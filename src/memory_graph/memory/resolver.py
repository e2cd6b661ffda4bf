"""Relationship resolution for newly created memories.

Given a memory that is about to be stored, the resolver asks the store for
the owner's most similar active memories and, for each qualifying
candidate, asks the categorization provider whether the new text
contradicts it.  The verdict and the similarity are folded into one typed,
weighted edge by :func:`classify_edge`.

Contradictions are recorded, never resolved: the candidate memory is left
untouched, so several mutually contradicting memories may coexist.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from memory_graph.graph.schema import ConflictAssessment, EdgeType, Memory, Relationship, SimilarMemory
from memory_graph.memory.deadlines import call_provider, gather_or_cancel
from memory_graph.providers.categorizer import Categorizer
from memory_graph.storage.base import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 10
DEFAULT_MIN_SIMILARITY = 0.5
INFERRED_STRENGTH = 0.6


def _unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def classify_edge(similarity: float, assessment: ConflictAssessment) -> Tuple[EdgeType, float]:
    if assessment.has_conflict:
        return EdgeType.CONTRADICTS, _unit(assessment.confidence)
    if assessment.extends:
        return EdgeType.EXTENDS, _unit(similarity)
    return EdgeType.RELATED_TO, _unit(similarity)


class RelationshipResolver:
    def __init__(
        self,
        store: VectorStore,
        categorizer: Categorizer,
        top_k: int = DEFAULT_TOP_K,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        provider_timeout: Optional[float] = None,
        infer_entity_edges: bool = False,
    ) -> None:
        self._store = store
        self._categorizer = categorizer
        self.top_k = top_k
        self.min_similarity = min_similarity
        self.provider_timeout = provider_timeout
        self.infer_entity_edges = infer_entity_edges

    async def candidates(self, memory: Memory) -> List[SimilarMemory]:
        found = await self._store.nearest(
            memory.user_id,
            memory.embedding,
            limit=self.top_k,
            min_similarity=self.min_similarity,
        )
        return [c for c in found if c.memory.id != memory.id]

    async def resolve(self, memory: Memory) -> List[Relationship]:
        candidates = await self.candidates(memory)
        if not candidates:
            logger.debug("No candidates above %.2f for memory %s", self.min_similarity, memory.id)
            return []

        assessments: List[ConflictAssessment] = await gather_or_cancel(*(
            call_provider(
                self._categorizer.detect_conflict(c.memory.content, memory.content),
                "categorization",
                self.provider_timeout,
            )
            for c in candidates
        ))

        edges: List[Relationship] = []
        for candidate, assessment in zip(candidates, assessments):
            edge_type, strength = classify_edge(candidate.similarity, assessment)
            metadata = {"similarity": candidate.similarity}
            if assessment.explanation:
                metadata["explanation"] = assessment.explanation
            edges.append(Relationship(
                user_id=memory.user_id,
                source_memory_id=memory.id,
                target_memory_id=candidate.memory.id,
                relationship_type=edge_type,
                strength=strength,
                metadata=metadata,
            ))
            if edge_type is EdgeType.CONTRADICTS:
                logger.info(
                    "Memory %s contradicts %s (confidence %.2f)",
                    memory.id, candidate.memory.id, strength,
                )

        if self.infer_entity_edges and memory.entities:
            edges.extend(await self._entity_edges(memory, {e.target_memory_id for e in edges}))
        return edges

    async def _entity_edges(self, memory: Memory, linked: set[str]) -> List[Relationship]:
        neighbours = await self._store.memories_sharing_entities(
            memory.user_id,
            memory.entities,
            exclude_ids=linked | {memory.id},
            limit=self.top_k,
        )
        return [
            Relationship(
                user_id=memory.user_id,
                source_memory_id=memory.id,
                target_memory_id=n.id,
                relationship_type=EdgeType.INFERRED,
                strength=INFERRED_STRENGTH,
                metadata={"reason": "shared_entity"},
            )
            for n in neighbours
        ]
