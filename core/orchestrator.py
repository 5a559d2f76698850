"""
Dialogue Orchestrator — the per-message controller of the flow engine.

Architecture:
  webhook payload → parse_webhook_payload → InboundEvent per messaging event
  → (per conversation lock) ConversationResolver: echo / duplicate / load state
  → variable extraction + merge
  → response source, first hit wins:
        1. quick reply into the conversation's current flow
        2. free text along the current node's free-text edge
        3. keyword match that starts a new flow
  → NodeExecutor renders the node → OutboundDispatcher sends it
  → one conditional conversation update (+ reservation at end of flow)

Every failure is caught at the turn boundary and reported in the TurnResult;
one bad event never stops the events after it.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from backend.connector import ReservationConnector, apply_defaults, get_missing_fields
from channels.base import SendResult
from channels.dispatcher import OutboundDispatcher
from channels.instagram_adapter import parse_webhook_payload
from context.locks import KeyedLockManager
from context.resolver import ConversationResolver, Resolution
from database.store_base import (
    ConversationConflictError, ConversationStore, FlowStore, IntegrationStore, MessageStore,
)
from extraction.extractor import (
    DEFAULT_TIMEZONE, extract_awaited_field, extract_variables, infer_awaited_fields,
    is_filled, merge_variables, today_in,
)
from flows.executor import NodeExecutor
from flows.matcher import FlowMatcher
from flows.models import Flow, FlowResponse
from models.schemas import (
    Conversation, ConversationPatch, ConversationStatus, InboundEvent, IntegrationContext,
    Message, MessageDirection, MessageFailure, MessageType, ReservationResult,
)

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  RESULTS
# ══════════════════════════════════════════════════════════════

class TurnOutcome(str, Enum):
    IGNORED = "ignored"                 # echo or empty event
    DUPLICATE = "duplicate"             # message id already processed
    RESPONDED = "responded"
    NO_RESPONSE = "no_response"
    SUPPRESSED = "suppressed"           # integration credentials known to be bad
    DISPATCH_FAILED = "dispatch_failed"
    CONFLICT = "conflict"               # conversation changed underneath us
    ERROR = "error"


class ResponseSource(str, Enum):
    QUICK_REPLY = "quick_reply"
    FREE_TEXT = "free_text"
    NEW_FLOW = "new_flow"


@dataclass
class TurnResult:
    outcome: TurnOutcome
    conversation_id: Optional[str] = None
    source: Optional[ResponseSource] = None
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    send_result: Optional[SendResult] = None
    reservation: Optional[ReservationResult] = None
    error: str = ""

    def __bool__(self):
        return self.outcome == TurnOutcome.RESPONDED

    def __repr__(self):
        return (f"TurnResult({self.outcome.value}, source={self.source and self.source.value}, "
                f"flow={self.flow_id}, node={self.node_id})")


@dataclass
class _Plan:
    flow: Flow
    response: FlowResponse
    source: ResponseSource
    variables: dict[str, Any] = field(default_factory=dict)

    @property
    def starts_new_flow(self) -> bool:
        return self.source == ResponseSource.NEW_FLOW


# ══════════════════════════════════════════════════════════════
#  ORCHESTRATOR
# ══════════════════════════════════════════════════════════════

class DialogueOrchestrator:
    """
    Wires the stores, the flow engine and the dispatcher together.
    All collaborators are passed in; process-wide instances are built once
    in api/main.py.
    """

    def __init__(
        self,
        flows: FlowStore,
        conversations: ConversationStore,
        messages: MessageStore,
        integrations: IntegrationStore,
        dispatcher: OutboundDispatcher,
        reservations: ReservationConnector,
        matcher: FlowMatcher = None,
        executor: NodeExecutor = None,
        resolver: ConversationResolver = None,
        locks: KeyedLockManager = None,
        timezone: str = DEFAULT_TIMEZONE,
        today: Callable[[], date] = None,
        log: Any = None,
    ):
        self.flows = flows
        self.conversations = conversations
        self.messages = messages
        self.integrations = integrations
        self.dispatcher = dispatcher
        self.reservations = reservations
        self.matcher = matcher or FlowMatcher(flows)
        self.executor = executor or NodeExecutor()
        self.resolver = resolver or ConversationResolver(conversations, messages)
        self.locks = locks or KeyedLockManager()
        self.timezone = timezone
        self._today = today or (lambda: today_in(self.timezone))
        self.log = log or logger

    # ══════════════════════════════════════════════════════════
    #  ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def process_webhook_payload(self, payload: dict[str, Any]) -> list[TurnResult]:
        """Handle every event in one webhook body; events run concurrently."""
        events = parse_webhook_payload(payload)
        if not events:
            return []
        return list(await asyncio.gather(*(self._dispatch_event(e) for e in events)))

    async def _dispatch_event(self, event: InboundEvent) -> TurnResult:
        try:
            integration = await self.integrations.get_by_channel_account(event.channel_account_id)
        except Exception as e:
            self.log.error("integration_lookup_failed", channel_account_id=event.channel_account_id,
                           error=str(e))
            return TurnResult(TurnOutcome.ERROR, error=str(e))
        if integration is None:
            self.log.warning("integration_not_found", channel_account_id=event.channel_account_id)
            return TurnResult(TurnOutcome.IGNORED, error="unknown channel account")
        return await self.handle_inbound_event(event, integration)

    async def handle_inbound_event(self, event: InboundEvent, integration: IntegrationContext) -> TurnResult:
        """
        Process one inbound event end to end. Never raises; the webhook
        caller acknowledges the delivery whatever happens here.
        """
        key = (integration.integration_id, event.sender_id)
        with structlog.contextvars.bound_contextvars(
            integration_id=integration.integration_id, sender_id=event.sender_id,
        ):
            try:
                async with self.locks.hold(key):
                    return await self._run_turn(event, integration)
            except Exception as e:
                self.log.error("turn_failed", message_id=event.message_id, error=str(e), exc_info=True)
                return TurnResult(TurnOutcome.ERROR, error=str(e))

    # ══════════════════════════════════════════════════════════
    #  TURN
    # ══════════════════════════════════════════════════════════

    async def _run_turn(self, event: InboundEvent, integration: IntegrationContext) -> TurnResult:
        resolved = await self.resolver.resolve(event, integration)
        if resolved.resolution == Resolution.DUPLICATE:
            return TurnResult(TurnOutcome.DUPLICATE)
        if not resolved:
            return TurnResult(TurnOutcome.IGNORED)

        conversation = resolved.conversation
        self.log.info("inbound_message", conversation_id=conversation.id,
                      message_type=resolved.message_type.value, message_text=event.text[:100],
                      flow_id=conversation.current_flow_id, node_id=conversation.current_node_id)

        current_flow = None
        if conversation.current_flow_id:
            current_flow = await self.flows.get_flow(conversation.current_flow_id)
            if current_flow is None:
                self.log.warning("current_flow_missing", flow_id=conversation.current_flow_id)

        today = self._today()
        text = event.text.strip()
        awaited = []
        if resolved.message_type == MessageType.TEXT:
            awaited = self._awaited_fields(current_flow, conversation.current_node_id)
        new_fields = extract_variables(text, conversation.variables, today=today, awaited_fields=awaited)
        for name in awaited:
            if name in new_fields or is_filled(conversation.variables.get(name)):
                continue
            value = extract_awaited_field(name, text, today)
            if is_filled(value):
                new_fields[name] = value
        merged = merge_variables(conversation.variables, new_fields)
        if new_fields:
            self.log.info("variables_extracted", fields=sorted(new_fields))

        plan = await self._plan_response(event, resolved.message_type, conversation,
                                         current_flow, integration, merged, today)
        if plan is None:
            patch = ConversationPatch(variables=merged if new_fields else None)
            await self._apply(conversation, patch)
            self.log.info("no_response", conversation_id=conversation.id)
            return TurnResult(TurnOutcome.NO_RESPONSE, conversation_id=conversation.id)

        return await self._respond(conversation, integration, plan)

    def _awaited_fields(self, flow: Optional[Flow], node_id: Optional[str]) -> list[str]:
        if flow is None or not node_id:
            return []
        node = flow.get_node(node_id)
        if node is not None and node.collects:
            return [node.collects]
        return infer_awaited_fields(node_id)

    async def _plan_response(
        self, event: InboundEvent, message_type: MessageType, conversation: Conversation,
        current_flow: Optional[Flow], integration: IntegrationContext,
        variables: dict[str, Any], today: date,
    ) -> Optional[_Plan]:
        text = event.text.strip()

        # 1. Button press inside the running flow
        if event.quick_reply_payload and conversation.has_active_flow and current_flow:
            response = self.executor.handle_quick_reply_selection(
                current_flow, event.quick_reply_payload, variables,
            )
            if response:
                return _Plan(current_flow, response, ResponseSource.QUICK_REPLY, variables)

        # 2. Free-text answer to the current node
        if message_type == MessageType.TEXT and text and current_flow and conversation.current_node_id:
            response = self.executor.handle_free_text_input(
                current_flow, conversation.current_node_id, variables,
            )
            if response:
                return _Plan(current_flow, response, ResponseSource.FREE_TEXT, variables)

        # 3. Keyword trigger of a (new) flow
        if message_type == MessageType.TEXT and text:
            match = await self.matcher.match(integration.tenant_id, text)
            if match:
                fresh = extract_variables(text, {}, today=today)
                response = self.executor.execute(match.flow, match.start_node_id, fresh)
                if response:
                    return _Plan(match.flow, response, ResponseSource.NEW_FLOW, fresh)

        return None

    # ══════════════════════════════════════════════════════════
    #  RESPONSE
    # ══════════════════════════════════════════════════════════

    async def _respond(
        self, conversation: Conversation, integration: IntegrationContext, plan: _Plan,
    ) -> TurnResult:
        response = plan.response
        result = TurnResult(
            TurnOutcome.RESPONDED, conversation_id=conversation.id,
            source=plan.source, flow_id=plan.flow.id, node_id=response.node_id,
        )

        if response.is_empty:
            self.log.warning("flow_response_empty", flow_id=plan.flow.id, node_id=response.node_id)
            await self._apply(conversation, ConversationPatch(variables=plan.variables))
            result.outcome = TurnOutcome.NO_RESPONSE
            return result

        if not integration.healthy:
            self.log.warning("dispatch_suppressed", reason=integration.unhealthy_reason)
            result.outcome = TurnOutcome.SUPPRESSED
            return result

        send_result = await self.dispatcher.send(
            conversation.sender_id, response.text, response.quick_replies,
            integration.access_token, image_url=response.image_url,
        )
        result.send_result = send_result
        if not send_result.success:
            await self._handle_dispatch_failure(conversation, integration, plan, send_result)
            result.outcome = TurnOutcome.DISPATCH_FAILED
            return result

        await self.messages.append(Message(
            conversation_id=conversation.id,
            direction=MessageDirection.OUTGOING,
            type=MessageType.QUICK_REPLY if response.quick_replies else MessageType.TEXT,
            content=response.text,
            external_message_id=send_result.message_id,
            flow_id=plan.flow.id,
            node_id=response.node_id,
        ))

        patch = ConversationPatch(
            current_flow_id=plan.flow.id,
            current_node_id=None if response.is_end_of_flow else response.node_id,
            clear_node=response.is_end_of_flow,
            status=ConversationStatus.CLOSED if response.is_end_of_flow else ConversationStatus.ACTIVE,
            variables=plan.variables,
            clear_reservation=plan.starts_new_flow,
        )
        if response.is_end_of_flow:
            result.reservation = await self._complete_flow(conversation, integration, plan, patch)

        try:
            await self._apply(conversation, patch)
        except ConversationConflictError as e:
            self.log.warning("conversation_state_conflict", conversation_id=conversation.id,
                             expected_version=e.expected_version, actual_version=e.actual_version)
            if patch.reservation_id:
                await self._record_reservation(conversation, patch.reservation_id)
            result.outcome = TurnOutcome.CONFLICT
            return result

        self.log.info("response_sent", source=plan.source.value, flow_id=plan.flow.id,
                      node_id=response.node_id, next_node_id=response.next_node_id,
                      end_of_flow=response.is_end_of_flow, message_id=send_result.message_id)
        return result

    async def _complete_flow(
        self, conversation: Conversation, integration: IntegrationContext,
        plan: _Plan, patch: ConversationPatch,
    ) -> Optional[ReservationResult]:
        """End of flow: create the booking when the flow produces one and has the data."""
        output = plan.flow.output_config
        if not output.creates_reservation:
            patch.flow_completed = True
            self.log.info("flow_completed", flow_id=plan.flow.id, output_type=output.type.value)
            return None

        if conversation.metadata.reservation_id and not plan.starts_new_flow:
            self.log.info("reservation_already_created", reservation_id=conversation.metadata.reservation_id)
            return None

        variables = apply_defaults(plan.variables, output.defaults)
        missing = get_missing_fields(variables, output.required_fields)
        if missing:
            self.log.info("reservation_missing_fields", flow_id=plan.flow.id, missing_fields=missing)
            return ReservationResult(success=False, missing_fields=missing)

        try:
            reservation = await self.reservations.create(
                integration.tenant_id, conversation.id, plan.flow.id, variables, conversation.sender_id,
            )
        except Exception as e:
            self.log.error("reservation_trigger_failed", flow_id=plan.flow.id, error=str(e))
            return ReservationResult(success=False, error=str(e))

        if reservation.success:
            patch.reservation_id = reservation.reservation_id
            patch.flow_completed = True
            self.log.info("reservation_recorded", reservation_id=reservation.reservation_id)
        else:
            self.log.warning("reservation_not_created", missing_fields=reservation.missing_fields,
                             error=reservation.error)
        return reservation

    async def _record_reservation(self, conversation: Conversation, reservation_id: str) -> None:
        """
        The booking exists even though the turn lost the state race; store
        its id on whatever state won so the flow does not book twice.
        """
        try:
            await self.conversations.update(
                conversation.id, ConversationPatch(reservation_id=reservation_id, flow_completed=True),
            )
            self.log.info("reservation_recorded_after_conflict", reservation_id=reservation_id)
        except Exception as e:
            self.log.error("reservation_orphaned", conversation_id=conversation.id,
                           reservation_id=reservation_id, error=str(e))

    async def _handle_dispatch_failure(
        self, conversation: Conversation, integration: IntegrationContext,
        plan: _Plan, send_result: SendResult,
    ) -> None:
        """The conversation stays as it was; the failure is recorded for follow-up."""
        response = plan.response
        try:
            await self.messages.record_failure(MessageFailure(
                integration_id=integration.integration_id,
                conversation_id=conversation.id,
                recipient_id=conversation.sender_id,
                message_type=MessageType.QUICK_REPLY if response.quick_replies else MessageType.TEXT,
                content=response.text,
                quick_replies=response.quick_replies,
                error_kind=send_result.error_kind.value if send_result.error_kind else "",
                error_code=send_result.error_code,
                error_message=send_result.error_message,
                retryable=send_result.retryable,
                attempts=send_result.attempts,
                flow_id=plan.flow.id,
                node_id=response.node_id,
            ))
        except Exception as e:
            self.log.warning("message_failure_record_failed", error=str(e))

        if send_result.is_credential_error:
            await self.integrations.mark_unhealthy(
                integration.integration_id, send_result.error_message or "credential error",
            )

    async def _apply(self, conversation: Conversation, patch: ConversationPatch) -> Conversation:
        return await self.conversations.update(
            conversation.id, patch, expected_version=conversation.state_version,
        )
