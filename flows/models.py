"""
Flow Graph Models — the dialogue scripts a business builds in the flow editor.

A Flow is a directed graph: nodes are dialogue steps, edges are the ways the
user can move on. Button edges are tagged with the quick reply they belong to;
untagged edges are followed on free-text input.

Node kinds (tagged union on `kind`):
  message        plain text, optionally with {{variables}}
  quick_replies  text plus a configured list of buttons
  image          an image, optionally followed by text
  action         a named side effect marker (text optional)
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from models.schemas import QuickReply, RESERVATION_REQUIRED_FIELDS


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class InputMode(str, Enum):
    BUTTONS = "buttons"
    FREE_TEXT = "free_text"


class MatchType(str, Enum):
    EXACT = "EXACT"
    CONTAINS = "CONTAINS"


class FlowStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"


class OutputType(str, Enum):
    RESERVATION = "reservation"
    CUSTOM = "custom"


# ──────────────────────────────────────────────────────────────
#  Nodes
# ──────────────────────────────────────────────────────────────

class FlowQuickReply(BaseModel):
    """A configured button on a node."""
    id: str
    label: str
    payload: str = ""
    target_node_id: Optional[str] = None


class _NodeBase(BaseModel):
    id: str
    text: str = ""
    label: str = ""
    variant: str = ""
    input_mode: Optional[InputMode] = None        # explicit override; inferred when None
    collects: Optional[str] = None                # variable this node asks the user for

    @property
    def template(self) -> str:
        return self.text or self.label

    @property
    def display_label(self) -> str:
        return self.label or self.text[:20]

    @property
    def quick_replies(self) -> list[FlowQuickReply]:
        return []

    @property
    def image_url(self) -> Optional[str]:
        return None

    @property
    def is_summary(self) -> bool:
        return self.variant == "summary" or self.id == "summary"


class MessageNode(_NodeBase):
    kind: Literal["message"] = "message"


class QuickReplyNode(_NodeBase):
    kind: Literal["quick_replies"] = "quick_replies"
    buttons: list[FlowQuickReply] = Field(default_factory=list)
    image: Optional[str] = None

    @property
    def quick_replies(self) -> list[FlowQuickReply]:
        return self.buttons

    @property
    def image_url(self) -> Optional[str]:
        return self.image


class ImageNode(_NodeBase):
    kind: Literal["image"] = "image"
    image: str

    @property
    def image_url(self) -> Optional[str]:
        return self.image


class ActionNode(_NodeBase):
    kind: Literal["action"] = "action"
    action: str
    params: dict[str, Any] = Field(default_factory=dict)


FlowNode = Annotated[
    Union[MessageNode, QuickReplyNode, ImageNode, ActionNode],
    Field(discriminator="kind"),
]


# ──────────────────────────────────────────────────────────────
#  Edges, triggers, output config
# ──────────────────────────────────────────────────────────────

class FlowEdge(BaseModel):
    id: str
    source: str
    target: str
    quick_reply_id: Optional[str] = None          # set for button edges

    @property
    def is_quick_reply_edge(self) -> bool:
        return bool(self.quick_reply_id)


class FlowTrigger(BaseModel):
    id: str
    type: Literal["KEYWORD"] = "KEYWORD"
    keywords: list[str] = Field(default_factory=list)
    match_type: MatchType = MatchType.CONTAINS
    start_node_id: Optional[str] = None


class OutputConfig(BaseModel):
    """What a completed flow produces and which variables it needs."""
    type: OutputType = OutputType.RESERVATION
    required_fields: list[str] = Field(default_factory=lambda: list(RESERVATION_REQUIRED_FIELDS))
    defaults: dict[str, Any] = Field(default_factory=dict)

    @property
    def creates_reservation(self) -> bool:
        return self.type == OutputType.RESERVATION


# ──────────────────────────────────────────────────────────────
#  Flow
# ──────────────────────────────────────────────────────────────

class Flow(BaseModel):
    id: str
    tenant_id: str
    name: str = ""
    status: FlowStatus = FlowStatus.ACTIVE
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    triggers: list[FlowTrigger] = Field(default_factory=list)
    output_config: OutputConfig = Field(default_factory=OutputConfig)

    def get_node(self, node_id: str) -> Optional[_NodeBase]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    def outgoing_edges(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    @property
    def start_node_ids(self) -> list[str]:
        return [t.start_node_id for t in self.triggers if t.start_node_id]

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE


# ──────────────────────────────────────────────────────────────
#  Execution result
# ──────────────────────────────────────────────────────────────

class FlowResponse(BaseModel):
    """What the executor produced for one node."""
    flow_id: str
    node_id: str
    text: str = ""
    image_url: Optional[str] = None
    quick_replies: list[QuickReply] = Field(default_factory=list)
    next_node_id: Optional[str] = None
    is_end_of_flow: bool = False
    action: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.image_url and not self.quick_replies
