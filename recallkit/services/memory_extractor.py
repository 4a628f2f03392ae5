"""Turns document sections into candidate memories through the LLM."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence

from recallkit.core.enums import MemoryType
from recallkit.core.errors import ExtractionError
from recallkit.services.llm_service import LLMService

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = """\
You extract durable, recallable knowledge from document text.

Return strict JSON: {"memories": [{"type": "doc.chunk" | "fact", "content": string, "confidence": number}]}

Rules:
- "doc.chunk": a faithful passage of the document (1-4 sentences), quoted or lightly condensed.
- "fact": a single self-contained statement (who/what/when), stated plainly.
- Never mention the file name, file path or "the document" in content.
- confidence is between 0 and 1.
- Return {"memories": []} when the text holds nothing worth remembering.
"""

EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "memories": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": [MemoryType.DOC_CHUNK.value, MemoryType.FACT.value]},
                    "content": {"type": "string"},
                    "confidence": {"type": "number"},
                },
                "required": ["type", "content", "confidence"],
            },
        },
    },
    "required": ["memories"],
}

_ALLOWED_TYPES = frozenset({MemoryType.DOC_CHUNK.value, MemoryType.FACT.value})


@dataclass
class ExtractedMemory:
    type: str
    content: str
    confidence: float


def _coerce_item(item: Any) -> ExtractedMemory | None:
    if not isinstance(item, dict):
        return None
    content = item.get("content")
    if not isinstance(content, str) or not content.strip():
        return None
    mem_type = item.get("type") if item.get("type") in _ALLOWED_TYPES else MemoryType.DOC_CHUNK.value
    try:
        confidence = float(item.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    return ExtractedMemory(type=mem_type, content=content.strip(), confidence=max(0.0, min(1.0, confidence)))


class MemoryExtractor:
    def __init__(self, llm: LLMService):
        self._llm = llm

    @staticmethod
    def build_prompt(sections: Sequence[str]) -> str:
        parts = ["Extract memories from the following sections.", ""]
        for i, section in enumerate(sections, 1):
            parts.append(f"--- Section {i} ---")
            parts.append(section)
            parts.append("")
        return "\n".join(parts)

    async def extract(self, sections: Sequence[str]) -> List[ExtractedMemory]:
        """One provider call for a sub-batch of sections.

        Provider failures propagate as ExtractionError (ProviderError keeps
        the retry-after hint); retrying is the caller's job.
        """
        data = await self._llm.complete_json(
            self.build_prompt(sections),
            schema=EXTRACTION_SCHEMA,
            system_prompt=EXTRACTION_SYSTEM_PROMPT,
            retry=False,
        )
        if isinstance(data, dict):
            items = data.get("memories", [])
        elif isinstance(data, list):
            items = data
        else:
            raise ExtractionError(f"Unexpected extraction payload: {type(data).__name__}")
        if not isinstance(items, list):
            raise ExtractionError("Extraction payload 'memories' is not a list")

        memories = [m for m in (_coerce_item(i) for i in items) if m is not None]
        dropped = len(items) - len(memories)
        if dropped:
            logger.debug("Dropped %d invalid extraction items", dropped)
        return memories
