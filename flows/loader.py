"""
Flow Loader — turns the editor's raw JSON export into a validated Flow.

The editor stores loosely typed node data (react-flow style):

    {"id": "ask-date", "data": {"text": "...", "quickReplies": [...], "imageUrl": null}}

Here every node is mapped onto exactly one node kind and the graph is checked
against its invariants before the engine ever executes it.
"""
from __future__ import annotations

from collections import deque
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from flows.models import (
    ActionNode, Flow, FlowEdge, FlowQuickReply, FlowStatus, FlowTrigger,
    ImageNode, InputMode, MatchType, MessageNode, OutputConfig, OutputType,
    QuickReplyNode,
)
from models.schemas import RESERVATION_REQUIRED_FIELDS

logger = structlog.get_logger()

_STATUS_ALIASES = {
    "aktiv": FlowStatus.ACTIVE, "active": FlowStatus.ACTIVE,
    "entwurf": FlowStatus.DRAFT, "draft": FlowStatus.DRAFT,
}


class FlowValidationError(ValueError):
    """Raised when a flow graph breaks its structural invariants."""

    def __init__(self, flow_id: str, errors: list[str]):
        self.flow_id = flow_id
        self.errors = errors
        super().__init__(f"Invalid flow {flow_id}: {'; '.join(errors)}")


# ── Raw → typed ───────────────────────────────────────────

def _parse_quick_replies(raw: list[dict[str, Any]]) -> list[FlowQuickReply]:
    replies = []
    for i, qr in enumerate(raw or []):
        label = str(qr.get("label") or "").strip()
        if not label:
            continue
        replies.append(FlowQuickReply(
            id=str(qr.get("id") or f"qr-{i}"),
            label=label,
            payload=str(qr.get("payload") or ""),
            target_node_id=qr.get("targetNodeId") or qr.get("target_node_id") or None,
        ))
    return replies


def parse_node(raw: dict[str, Any]):
    """Pick the node kind from whichever optional fields are present."""
    data = raw.get("data") or {}
    common = {
        "id": str(raw["id"]),
        "text": str(data.get("text") or ""),
        "label": str(data.get("label") or ""),
        "variant": str(data.get("variant") or ""),
        "collects": data.get("collects") or None,
    }
    mode = data.get("inputMode") or data.get("input_mode")
    if mode:
        common["input_mode"] = InputMode(mode)

    quick_replies = _parse_quick_replies(data.get("quickReplies") or data.get("quick_replies") or [])
    image_url = data.get("imageUrl") or data.get("image_url") or None
    action = data.get("action")

    if quick_replies:
        return QuickReplyNode(buttons=quick_replies, image=image_url, **common)
    if image_url:
        return ImageNode(image=image_url, **common)
    if action or common["variant"] == "action":
        return ActionNode(action=str(action or common["id"]), params=data.get("params") or {}, **common)
    return MessageNode(**common)


def _parse_edge(raw: dict[str, Any], quick_reply_ids: dict[str, set[str]]) -> FlowEdge:
    data = raw.get("data") or {}
    source = str(raw["source"])
    tag = raw.get("quickReplyId") or data.get("quickReplyId")
    # A source handle only counts as a button tag when it names a button of the source node
    handle = raw.get("sourceHandle")
    if not tag and handle and handle in quick_reply_ids.get(source, set()):
        tag = handle
    return FlowEdge(
        id=str(raw.get("id") or f"{source}->{raw['target']}"),
        source=source,
        target=str(raw["target"]),
        quick_reply_id=tag or None,
    )


def _parse_trigger(raw: dict[str, Any]) -> Optional[FlowTrigger]:
    if (raw.get("type") or "KEYWORD") != "KEYWORD":
        return None
    config = raw.get("config") or {}
    keywords = [str(k).strip() for k in (config.get("keywords") or raw.get("keywords") or []) if str(k).strip()]
    match_type = (config.get("matchType") or raw.get("match_type") or "CONTAINS").upper()
    return FlowTrigger(
        id=str(raw.get("id") or "trigger"),
        keywords=keywords,
        match_type=MatchType(match_type),
        start_node_id=raw.get("startNodeId") or raw.get("start_node_id") or None,
    )


def parse_output_config(metadata: Optional[dict[str, Any]]) -> OutputConfig:
    """
    Flows without an explicit output config are legacy reservation flows
    that need all four booking fields; configured reservation flows default
    to one guest when the party size was never asked.
    """
    raw = (metadata or {}).get("output_config") or {}
    if not raw.get("type"):
        return OutputConfig()

    output_type = OutputType(raw["type"])
    defaults = dict(raw.get("defaults") or {})
    if output_type == OutputType.RESERVATION:
        defaults.setdefault("guestCount", 1)
        required = raw.get("requiredFields") or raw.get("required_fields") or [
            f for f in RESERVATION_REQUIRED_FIELDS if f != "guestCount"
        ]
    else:
        required = raw.get("requiredFields") or raw.get("required_fields") or []
    return OutputConfig(type=output_type, required_fields=list(required), defaults=defaults)


def load_flow(raw: dict[str, Any], tenant_id: str = "", validate: bool = True) -> Flow:
    """Build a Flow from its stored JSON; raises FlowValidationError when malformed."""
    flow_id = str(raw.get("id") or "")
    try:
        nodes = [parse_node(n) for n in raw.get("nodes") or []]
        button_ids = {n.id: {qr.id for qr in n.quick_replies} for n in nodes}
        edges = [_parse_edge(e, button_ids) for e in raw.get("edges") or []]
        triggers = [t for t in (_parse_trigger(t) for t in raw.get("triggers") or []) if t]
        status = _STATUS_ALIASES.get(str(raw.get("status") or "active").lower(), FlowStatus.DRAFT)
        flow = Flow(
            id=flow_id,
            tenant_id=str(raw.get("tenant_id") or raw.get("account_id") or tenant_id),
            name=str(raw.get("name") or ""),
            status=status,
            nodes=nodes,
            edges=edges,
            triggers=triggers,
            output_config=parse_output_config(raw.get("metadata")),
        )
    except (KeyError, ValueError, ValidationError) as e:
        raise FlowValidationError(flow_id, [f"malformed flow data: {e}"]) from e

    if validate:
        errors = validate_flow(flow)
        if errors:
            raise FlowValidationError(flow.id, errors)
    return flow


# ── Validation ────────────────────────────────────────────

def reachable_nodes(flow: Flow, start_node_id: str) -> set[str]:
    """Breadth-first walk over edges and button targets."""
    visited: set[str] = set()
    queue = deque([start_node_id])
    while queue:
        node_id = queue.popleft()
        if node_id in visited:
            continue
        node = flow.get_node(node_id)
        if node is None:
            continue
        visited.add(node_id)
        queue.extend(e.target for e in flow.outgoing_edges(node_id))
        queue.extend(qr.target_node_id for qr in node.quick_replies if qr.target_node_id)
    return visited


def validate_flow(flow: Flow) -> list[str]:
    """Return a list of invariant violations (empty when the graph is valid)."""
    errors: list[str] = []
    if not flow.id:
        errors.append("flow has no id")

    seen: set[str] = set()
    for node in flow.nodes:
        if node.id in seen:
            errors.append(f"duplicate node id '{node.id}'")
        seen.add(node.id)

    for edge in flow.edges:
        if edge.source not in seen:
            errors.append(f"edge '{edge.id}' has unknown source '{edge.source}'")
        if edge.target not in seen:
            errors.append(f"edge '{edge.id}' has unknown target '{edge.target}'")
        if edge.quick_reply_id:
            source = flow.get_node(edge.source)
            if source and edge.quick_reply_id not in {qr.id for qr in source.quick_replies}:
                errors.append(f"edge '{edge.id}' is tagged with unknown quick reply '{edge.quick_reply_id}'")

    for node in flow.nodes:
        for qr in node.quick_replies:
            if qr.target_node_id and qr.target_node_id not in seen:
                errors.append(f"quick reply '{qr.id}' on '{node.id}' targets unknown node '{qr.target_node_id}'")

    for trigger in flow.triggers:
        if not trigger.start_node_id:
            errors.append(f"trigger '{trigger.id}' has no start node")
        elif trigger.start_node_id not in seen:
            errors.append(f"trigger '{trigger.id}' starts at unknown node '{trigger.start_node_id}'")

    if errors:
        return errors

    # Every reachable node must continue somewhere or be a clean terminal
    reachable: set[str] = set()
    for start in flow.start_node_ids:
        reachable |= reachable_nodes(flow, start)
    for node_id in sorted(reachable):
        node = flow.get_node(node_id)
        if flow.outgoing_edges(node_id) or not node.quick_replies:
            continue
        untargeted = [qr.id for qr in node.quick_replies if not qr.target_node_id]
        if untargeted:
            errors.append(
                f"node '{node_id}' has buttons without a target and no outgoing edges: {', '.join(untargeted)}"
            )
    return errors
