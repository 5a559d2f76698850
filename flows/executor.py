"""
Node Executor — renders one flow node and works out where the dialogue can go next.

Provides:
- NodeExecutor.execute: render a node into a FlowResponse
- NodeExecutor.handle_quick_reply_selection: follow a button payload
- NodeExecutor.handle_free_text_input: follow the free-text edge of a node
- resolve_input_mode / parse_quick_reply_payload / build_quick_reply_payload
"""
from __future__ import annotations

import re
from typing import Any, Optional

import structlog

from extraction.substitutor import build_summary_lines, has_placeholders, substitute_variables
from flows.models import Flow, FlowEdge, FlowQuickReply, FlowResponse, InputMode
from models.schemas import QuickReply

logger = structlog.get_logger()

_PAYLOAD_RE = re.compile(r"^flow:([^:]+):node:(.+)$")

DEFAULT_BUTTON_LABEL = "Weiter"


def build_quick_reply_payload(flow_id: str, node_id: str) -> str:
    return f"flow:{flow_id}:node:{node_id}"


def parse_quick_reply_payload(payload: Optional[str]) -> Optional[tuple[str, str]]:
    """Split `flow:{flowId}:node:{nodeId}` into its ids, or None."""
    if not payload:
        return None
    match = _PAYLOAD_RE.match(payload)
    if not match:
        return None
    return match.group(1), match.group(2)


def resolve_input_mode(flow: Flow, node_id: str) -> InputMode:
    """
    Explicit node setting wins; otherwise buttons if the node has any,
    free text if some outgoing edge is not a button edge, else buttons.
    """
    node = flow.get_node(node_id)
    if node is None:
        return InputMode.BUTTONS
    if node.input_mode is not None:
        return node.input_mode
    if node.quick_replies:
        return InputMode.BUTTONS
    if any(not e.is_quick_reply_edge for e in flow.outgoing_edges(node_id)):
        return InputMode.FREE_TEXT
    return InputMode.BUTTONS


class NodeExecutor:
    """Stateless interpreter over a Flow graph."""

    def execute(self, flow: Flow, node_id: str, variables: dict[str, Any]) -> Optional[FlowResponse]:
        node = flow.get_node(node_id)
        if node is None:
            logger.error("flow_node_not_found", flow_id=flow.id, node_id=node_id)
            return None

        template = node.template
        text = substitute_variables(template, variables)
        if node.is_summary and not has_placeholders(template):
            lines = build_summary_lines(variables)
            if lines:
                text = "\n".join([text, "", *lines]) if text else "\n".join(lines)

        mode = resolve_input_mode(flow, node_id)
        edges = flow.outgoing_edges(node_id)
        if mode == InputMode.FREE_TEXT:
            edges = [e for e in edges if not e.is_quick_reply_edge]

        quick_replies = self._build_quick_replies(flow, node.quick_replies, edges)
        next_node_id = edges[0].target if len(edges) == 1 else None

        return FlowResponse(
            flow_id=flow.id,
            node_id=node.id,
            text=text,
            image_url=node.image_url,
            quick_replies=quick_replies,
            next_node_id=next_node_id,
            is_end_of_flow=not edges and not quick_replies,
            action=getattr(node, "action", None),
        )

    def _build_quick_replies(
        self, flow: Flow, configured: list[FlowQuickReply], edges: list[FlowEdge],
    ) -> list[QuickReply]:
        if configured:
            return [
                QuickReply(label=qr.label, payload=self._configured_payload(flow, qr, edges))
                for qr in configured
            ]
        if len(edges) <= 1:
            return []

        replies = []
        for edge in edges:
            target = flow.get_node(edge.target)
            if target is None:
                continue
            replies.append(QuickReply(
                label=target.display_label or DEFAULT_BUTTON_LABEL,
                payload=build_quick_reply_payload(flow.id, edge.target),
            ))
        return replies

    @staticmethod
    def _configured_payload(flow: Flow, qr: FlowQuickReply, edges: list[FlowEdge]) -> str:
        target = qr.target_node_id
        if not target:
            tagged = next((e for e in edges if e.quick_reply_id == qr.id), None)
            target = tagged.target if tagged else (edges[0].target if edges else None)
        if target:
            return build_quick_reply_payload(flow.id, target)
        return qr.payload or qr.label

    # ── Continuations ─────────────────────────────────────

    def handle_quick_reply_selection(
        self, flow: Flow, payload: str, variables: dict[str, Any],
    ) -> Optional[FlowResponse]:
        """
        Execute the node a button points at. Accepts the structured payload
        for this flow, or a bare node id from older flow exports.
        """
        parsed = parse_quick_reply_payload(payload)
        if parsed:
            flow_id, node_id = parsed
            if flow_id != flow.id:
                logger.info("quick_reply_flow_mismatch", payload_flow_id=flow_id, flow_id=flow.id)
                return None
            return self.execute(flow, node_id, variables)
        if payload and flow.has_node(payload):
            return self.execute(flow, payload, variables)
        return None

    def handle_free_text_input(
        self, flow: Flow, current_node_id: str, variables: dict[str, Any],
    ) -> Optional[FlowResponse]:
        """Advance along the single free-text edge of the current node."""
        if not flow.has_node(current_node_id):
            logger.warning("free_text_node_missing", flow_id=flow.id, node_id=current_node_id)
            return None
        if resolve_input_mode(flow, current_node_id) != InputMode.FREE_TEXT:
            return None
        edges = [e for e in flow.outgoing_edges(current_node_id) if not e.is_quick_reply_edge]
        if not edges:
            return None
        if len(edges) > 1:
            logger.info("free_text_multiple_edges", flow_id=flow.id, node_id=current_node_id,
                        taking=edges[0].target, edge_count=len(edges))
        return self.execute(flow, edges[0].target, variables)
