"""
Flow Matcher — picks the flow whose keyword trigger best fits an inbound message.

Scoring per keyword hit:
  EXACT     whole message equals the keyword     1000 + len(keyword)
  CONTAINS  keyword appears as a separate word    100 + len(keyword)

Ties are broken by flow id, then trigger id, so the same message always starts
the same flow regardless of storage order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import structlog

from flows.models import Flow, FlowTrigger, MatchType

if TYPE_CHECKING:
    from database.store_base import FlowStore

logger = structlog.get_logger()

EXACT_BASE_SCORE = 1000
CONTAINS_BASE_SCORE = 100


@dataclass(frozen=True)
class FlowMatch:
    flow: Flow
    trigger_id: str
    start_node_id: str
    keyword: str
    score: int

    @property
    def sort_key(self) -> tuple:
        return (-self.score, self.flow.id, self.trigger_id)


def _contains_word(message: str, keyword: str) -> bool:
    pattern = rf"(?:^|\s|[.,!?]){re.escape(keyword)}(?:$|\s|[.,!?])"
    return re.search(pattern, message) is not None


def score_trigger(message: str, trigger: FlowTrigger) -> tuple[int, str]:
    """Best score over the trigger's keywords, with the keyword that produced it."""
    normalized = message.strip().lower()
    best, best_keyword = 0, ""
    for raw_keyword in trigger.keywords:
        keyword = raw_keyword.strip().lower()
        if not keyword:
            continue
        score = 0
        if trigger.match_type == MatchType.EXACT:
            if normalized == keyword:
                score = EXACT_BASE_SCORE + len(keyword)
        elif _contains_word(normalized, keyword):
            score = CONTAINS_BASE_SCORE + len(keyword)
        if score > best:
            best, best_keyword = score, keyword
    return best, best_keyword


class FlowMatcher:

    def __init__(self, flow_store: FlowStore):
        self.flow_store = flow_store

    async def match(self, tenant_id: str, text: str) -> Optional[FlowMatch]:
        if not text or not text.strip():
            return None

        flows = await self.flow_store.find_flows_by_tenant(tenant_id)
        candidates: list[FlowMatch] = []
        for flow in flows:
            if not flow.is_active:
                continue
            for trigger in flow.triggers:
                if not trigger.start_node_id:
                    continue
                score, keyword = score_trigger(text, trigger)
                if score > 0:
                    candidates.append(FlowMatch(
                        flow=flow, trigger_id=trigger.id,
                        start_node_id=trigger.start_node_id,
                        keyword=keyword, score=score,
                    ))

        if not candidates:
            return None
        best = min(candidates, key=lambda m: m.sort_key)
        logger.info("flow_matched", tenant_id=tenant_id, flow_id=best.flow.id,
                    trigger_id=best.trigger_id, keyword=best.keyword, score=best.score,
                    candidates=len(candidates))
        return best
