"""
ContextBridge Context Aggregator - Folds tool results into prompt context.

Successful tool outcomes become evidence entries; failures are logged and
left out so the reasoning backend never sees an error string presented
as a fact.
"""

import copy
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from contextbridge.mcp.schema import EvidenceEntry, Failure, InvocationOutcome

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are an AI assistant with access to various tools through the Model Context Protocol (MCP).
You have executed the following tools and received these results:

{context}

Use this information to provide helpful and accurate responses to the user's questions."""

NO_EVIDENCE_PROMPT = """You are an AI assistant with access to various tools through the Model Context Protocol (MCP).
No tool results are available for this question. Answer from your own knowledge and say so when you are unsure."""


def canonical_json(value: Any) -> str:
    """Stable JSON encoding used for argument snapshots."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class ContextAggregator:
    """
    Ordered evidence list plus its rendering.

    Entries keep the order in which ``record()`` was called, which is the
    order invocations completed.

    Example:
        >>> aggregator = ContextAggregator()
        >>> aggregator.record(outcome, "calculate", {"expression": "15 + 25"})
        >>> print(aggregator.render())
        Tool: calculate
        Arguments: {"expression":"15 + 25"}
        Result: The result of 15 + 25 is 40
    """

    def __init__(self, max_result_chars: Optional[int] = None):
        self.max_result_chars = max_result_chars
        self._evidence: List[EvidenceEntry] = []
        self._failures: List[Tuple[str, str]] = []

    @property
    def evidence(self) -> Tuple[EvidenceEntry, ...]:
        return tuple(self._evidence)

    @property
    def failures(self) -> Tuple[Tuple[str, str], ...]:
        """``(tool_name, message)`` for every failed outcome seen."""
        return tuple(self._failures)

    def __len__(self) -> int:
        return len(self._evidence)

    def record(
        self,
        outcome: InvocationOutcome,
        tool_name: str,
        arguments: Dict[str, Any],
    ) -> Optional[EvidenceEntry]:
        """Append evidence for a successful outcome; log and skip failures."""
        if isinstance(outcome, Failure):
            logger.warning("Tool %s failed, excluded from context: %s", tool_name, outcome.message)
            self._failures.append((tool_name, outcome.message))
            return None

        text = outcome.text
        if self.max_result_chars:
            text = self.summarize(text, self.max_result_chars)

        entry = EvidenceEntry(
            tool_name=tool_name,
            arguments=copy.deepcopy(arguments),
            rendered_result=text,
        )
        self._evidence.append(entry)
        logger.debug("Recorded evidence #%d from %s", len(self._evidence), tool_name)
        return entry

    def render(self) -> str:
        """Concatenate evidence entries, separated by blank lines."""
        return "\n\n".join(
            f"Tool: {entry.tool_name}\n"
            f"Arguments: {canonical_json(entry.arguments)}\n"
            f"Result: {entry.rendered_result}"
            for entry in self._evidence
        )

    def build_system_prompt(self) -> str:
        """System prompt handed to the reasoning backend."""
        if not self._evidence:
            return NO_EVIDENCE_PROMPT
        return SYSTEM_PROMPT_TEMPLATE.format(context=self.render())

    @staticmethod
    def summarize(output: str, max_chars: int = 500) -> str:
        """Keep the head and tail of an overlong tool result."""
        if len(output) <= max_chars:
            return output
        head = output[: max_chars // 2]
        tail = output[-(max_chars // 2):]
        omitted = len(output) - max_chars
        return f"{head}\n... [{omitted} chars omitted] ...\n{tail}"
