"""
Optional LLM-backed column mapping suggestions.

Only used when an Anthropic API key is configured and LLM mapping is enabled.
Any failure yields no suggestions; the deterministic strategies still run.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from catalog_import.core.config import settings

from .models import FieldMapping, MappingStrategy
from .target_schema import TargetField

logger = logging.getLogger(__name__)

LLM_MIN_CONFIDENCE = 40
LLM_MAX_CONFIDENCE = 89

SYSTEM_PROMPT = """You map spreadsheet columns onto a product catalog schema.

Reply with JSON only, in the form:
{"mappings": [{"source": "<source column>", "target": "<target field>", "confidence": <0-100>}]}

Rules:
- Use only the source columns and target fields you are given.
- Map each source column at most once and each target field at most once.
- Leave a column out rather than guessing."""


def _response_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif isinstance(block, str):
                parts.append(block)
        return "".join(parts)
    return str(content)


def parse_llm_mappings(text: str) -> List[Dict[str, Any]]:
    """Pull the ``mappings`` list out of a model reply, tolerating surrounding prose."""
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        return []
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.warning("LLM mapping reply was not valid JSON")
        return []
    mappings = payload.get("mappings") if isinstance(payload, dict) else None
    return [item for item in mappings or [] if isinstance(item, dict)]


class LLMFieldSuggester:
    def __init__(self, client=None, model: Optional[str] = None, api_key: Optional[str] = None):
        self._client = client
        self.model = model or settings.llm_mapping_model
        self.api_key = api_key if api_key is not None else settings.anthropic_api_key

    @classmethod
    def from_settings(cls) -> Optional["LLMFieldSuggester"]:
        if not settings.llm_mapping_enabled or not settings.anthropic_api_key:
            return None
        return cls()

    def _get_client(self):
        if self._client is None:
            self._client = ChatAnthropic(
                model=self.model,
                api_key=self.api_key,
                temperature=0,
                max_tokens=1024,
                timeout=settings.llm_api_timeout,
            )
        return self._client

    def _build_prompt(
        self,
        entity_type: str,
        source_fields: Sequence[str],
        sample_rows: Sequence[Dict[str, Any]],
        target_fields: Sequence[TargetField],
    ) -> str:
        targets = "\n".join(
            f"- {target.name}{' (required)' if target.required else ''}: {target.description or target.value_kind}"
            for target in target_fields
        )
        samples = json.dumps([dict(row) for row in sample_rows[:5]], default=str)
        return (
            f"Entity type: {entity_type}\n\n"
            f"Target fields:\n{targets}\n\n"
            f"Source columns: {json.dumps(list(source_fields))}\n\n"
            f"Sample rows: {samples}"
        )

    def suggest(
        self,
        entity_type: str,
        source_fields: Sequence[str],
        sample_rows: Sequence[Dict[str, Any]],
        target_fields: Sequence[TargetField],
    ) -> List[FieldMapping]:
        prompt = self._build_prompt(entity_type, source_fields, sample_rows, target_fields)
        try:
            response = self._get_client().invoke(
                [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)]
            )
        except Exception as exc:
            logger.warning("LLM mapping suggestion failed: %s", exc)
            return []

        valid_sources = set(source_fields)
        valid_targets = {target.name for target in target_fields}
        suggestions = []
        for item in parse_llm_mappings(_response_text(getattr(response, "content", response))):
            source, target = item.get("source"), item.get("target")
            if source not in valid_sources or target not in valid_targets:
                continue
            try:
                confidence = float(item.get("confidence", LLM_MIN_CONFIDENCE))
            except (TypeError, ValueError):
                confidence = LLM_MIN_CONFIDENCE
            confidence = max(LLM_MIN_CONFIDENCE, min(LLM_MAX_CONFIDENCE, confidence))
            suggestions.append(
                FieldMapping(
                    source_field=source,
                    target_field=target,
                    confidence=confidence,
                    strategy=MappingStrategy.LLM,
                )
            )
        logger.info("LLM suggested %d mappings for %s import", len(suggestions), entity_type)
        return suggestions
