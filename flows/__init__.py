"""
Flow engine: graph model, loader/validator, node executor and trigger matcher.

A flow is authored in the visual editor, exported as JSON, loaded into typed
nodes and edges here, and then walked one node per inbound message.
"""
from flows.models import (
    Flow, FlowNode, FlowEdge, FlowTrigger, FlowQuickReply, FlowResponse,
    MessageNode, QuickReplyNode, ImageNode, ActionNode,
    InputMode, MatchType, FlowStatus, OutputConfig, OutputType,
)
from flows.loader import FlowValidationError, load_flow, validate_flow, reachable_nodes
from flows.executor import (
    NodeExecutor, resolve_input_mode, parse_quick_reply_payload, build_quick_reply_payload,
)
from flows.matcher import FlowMatcher, FlowMatch

__all__ = [
    "Flow", "FlowNode", "FlowEdge", "FlowTrigger", "FlowQuickReply", "FlowResponse",
    "MessageNode", "QuickReplyNode", "ImageNode", "ActionNode",
    "InputMode", "MatchType", "FlowStatus", "OutputConfig", "OutputType",
    "FlowValidationError", "load_flow", "validate_flow", "reachable_nodes",
    "NodeExecutor", "resolve_input_mode", "parse_quick_reply_payload", "build_quick_reply_payload",
    "FlowMatcher", "FlowMatch",
]
