"""
Tests for the dialogue orchestrator.

Covers:
  - keyword start, quick reply, free-text continuation
  - booking at the end of a flow (incl. defaults and missing fields)
  - idempotency and per-conversation serialization
  - dispatch failures, unhealthy integrations, conflicts, turn-level errors
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from channels.base import TransportResponse
from core.orchestrator import ResponseSource, TurnOutcome
from database.store_base import ConversationConflictError
from models.schemas import ConversationPatch, ConversationStatus, MessageDirection, MessageType

ACCOUNT = "17841400000000001"


def graph_error(status, code):
    return TransportResponse(status_code=status, body={"error": {"message": f"error {code}", "code": code}})


def webhook(*messages, account=ACCOUNT):
    return {"object": "instagram", "entry": [{"id": account, "messaging": [
        {"sender": {"id": sender}, "recipient": {"id": account}, "timestamp": 1767225600000, "message": message}
        for sender, message in messages
    ]}]}


@pytest.fixture
def run(orchestrator, integration, make_event):
    """Send one text (or button press) through the orchestrator."""
    async def _run(text="", payload=None, **kwargs):
        return await orchestrator.handle_inbound_event(make_event(text, quick_reply_payload=payload, **kwargs),
                                                       integration)
    return _run


async def current_conversation(conversation_store, integration_id="int-1", sender_id="5550001"):
    return await conversation_store.get_or_create(integration_id, sender_id)


# ══════════════════════════════════════════════════════════════
#  DIALOGUE
# ══════════════════════════════════════════════════════════════

class TestDialogue:
    @pytest.mark.asyncio
    async def test_keyword_starts_flow(self, run, transport, conversation_store, message_store):
        result = await run("Ich möchte einen Tisch reservieren")
        assert result.outcome == TurnOutcome.RESPONDED
        assert result.source == ResponseSource.NEW_FLOW
        assert result.node_id == "welcome"

        assert transport.texts == ["Hallo! Wann möchtest du kommen?"]
        titles = [qr["title"] for qr in transport.sent[0][1]["message"]["quick_replies"]]
        assert titles == ["Heute", "Anderer Tag"]

        conv = await current_conversation(conversation_store)
        assert conv.current_flow_id == "flow-reservation"
        assert conv.current_node_id == "welcome"
        assert conv.status == ConversationStatus.ACTIVE
        assert conv.state_version == 1

        messages = await message_store.list_for_conversation(conv.id)
        assert [m.direction for m in messages] == [MessageDirection.INCOMING, MessageDirection.OUTGOING]
        assert messages[1].type == MessageType.QUICK_REPLY
        assert messages[1].external_message_id == "mid.out.1"

    @pytest.mark.asyncio
    async def test_full_booking(self, run, transport, conversation_store, reservations):
        await run("Tisch reservieren für 4 Personen")
        tapped = await run("Heute", payload="flow:flow-reservation:node:ask-time")
        assert tapped.source == ResponseSource.QUICK_REPLY
        assert tapped.node_id == "ask-time"

        answered = await run("19 Uhr")
        assert answered.source == ResponseSource.FREE_TEXT
        assert answered.node_id == "ask-guests"

        await run("4")
        final = await run("Lisa Müller")
        assert final.node_id == "summary"
        assert final.reservation.success

        conv = await current_conversation(conversation_store)
        assert conv.current_node_id is None
        assert conv.status == ConversationStatus.CLOSED
        assert conv.variables == {"guestCount": 4, "date": "2026-03-02", "time": "19:00", "name": "Lisa Müller"}
        assert conv.metadata.reservation_id == final.reservation.reservation_id
        assert conv.metadata.flow_completed

        booking = reservations.reservations[final.reservation.reservation_id]
        assert (booking["name"], booking["date"], booking["time"], booking["guestCount"]) == \
            ("Lisa Müller", "2026-03-02", "19:00", 4)
        assert "👤 Name: Lisa Müller" in transport.texts[-1]

    @pytest.mark.asyncio
    async def test_guest_count_defaults_to_one(self, run, reservations):
        await run("reservieren")
        await run("Anderer Tag", payload="flow:flow-reservation:node:ask-date")
        await run("morgen")
        await run("um 20 Uhr")
        await run("weiß ich noch nicht")
        final = await run("Max")
        booking = reservations.reservations[final.reservation.reservation_id]
        assert booking["guestCount"] == 1
        assert booking["date"] == "2026-03-03"

    @pytest.mark.asyncio
    async def test_missing_fields_skip_booking(self, run, conversation_store, reservations):
        await run("reservieren")
        await run("Anderer Tag", payload="flow:flow-reservation:node:ask-date")
        await run("irgendwann")
        await run("abends")
        await run("zu zweit")
        final = await run("Max")
        assert final.outcome == TurnOutcome.RESPONDED
        assert final.reservation.missing_fields == ["date", "time"]
        assert reservations.reservations == {}
        conv = await current_conversation(conversation_store)
        assert conv.metadata.reservation_id is None
        assert conv.status == ConversationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_bare_hour_answers_time_question(self, run, conversation_store, reservations):
        await run("reservieren")
        await run("Heute", payload="flow:flow-reservation:node:ask-time")
        await run("19")
        conv = await current_conversation(conversation_store)
        assert conv.variables == {"date": "2026-03-02", "time": "19:00"}
        assert conv.current_node_id == "ask-guests"

        await run("4")
        final = await run("Lisa")
        booking = reservations.reservations[final.reservation.reservation_id]
        assert (booking["time"], booking["guestCount"]) == ("19:00", 4)

    @pytest.mark.asyncio
    async def test_no_match_persists_extracted_variables(self, run, transport, conversation_store):
        result = await run("Habt ihr morgen offen?")
        assert result.outcome == TurnOutcome.NO_RESPONSE
        assert transport.sent == []
        conv = await current_conversation(conversation_store)
        assert conv.variables == {"date": "2026-03-03"}
        assert conv.state_version == 1
        assert conv.current_flow_id is None

    @pytest.mark.asyncio
    async def test_button_from_other_flow_ignored(self, run, transport):
        await run("reservieren")
        result = await run("Alt", payload="flow:old-flow:node:ask-date")
        assert result.outcome == TurnOutcome.NO_RESPONSE
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_new_flow_resets_variables(self, run, conversation_store):
        conv = await current_conversation(conversation_store)
        await conversation_store.update(conv.id, ConversationPatch(
            current_flow_id="flow-reservation", clear_node=True, status=ConversationStatus.CLOSED,
            variables={"name": "Alt", "date": "2026-01-10"}, reservation_id="res_old", flow_completed=True,
        ))
        result = await run("Tisch für 2 Personen reservieren")
        assert result.source == ResponseSource.NEW_FLOW
        conv = await current_conversation(conversation_store)
        assert conv.variables == {"guestCount": 2}
        assert conv.metadata.reservation_id is None
        assert not conv.metadata.flow_completed
        assert conv.status == ConversationStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_echo_ignored(self, run, transport):
        result = await run("reservieren", is_echo=True)
        assert result.outcome == TurnOutcome.IGNORED
        assert transport.sent == []


# ══════════════════════════════════════════════════════════════
#  IDEMPOTENCY & CONCURRENCY
# ══════════════════════════════════════════════════════════════

class TestIdempotency:
    @pytest.mark.asyncio
    async def test_redelivery_has_no_effect(self, run, transport, conversation_store):
        first = await run("reservieren", message_id="mid.dup")
        conv_before = await current_conversation(conversation_store)
        second = await run("reservieren", message_id="mid.dup")
        conv_after = await current_conversation(conversation_store)

        assert first.outcome == TurnOutcome.RESPONDED
        assert second.outcome == TurnOutcome.DUPLICATE
        assert len(transport.sent) == 1
        assert conv_after.state_version == conv_before.state_version

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_sends_once(self, orchestrator, integration, make_event, transport):
        results = await asyncio.gather(
            orchestrator.handle_inbound_event(make_event("reservieren", message_id="mid.x"), integration),
            orchestrator.handle_inbound_event(make_event("reservieren", message_id="mid.x"), integration),
        )
        assert sorted(r.outcome.value for r in results) == ["duplicate", "responded"]
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_turns_for_one_sender_run_one_at_a_time(self, orchestrator, integration, make_event,
                                                          transport, conversation_store):
        await orchestrator.handle_inbound_event(make_event("reservieren"), integration)

        entered, release = asyncio.Event(), asyncio.Event()
        send = transport.send

        async def held_send(*args):
            entered.set()
            await release.wait()
            return await send(*args)

        transport.send = held_send

        first = asyncio.create_task(orchestrator.handle_inbound_event(
            make_event("Anderer Tag", quick_reply_payload="flow:flow-reservation:node:ask-date"), integration))
        await entered.wait()
        second = asyncio.create_task(orchestrator.handle_inbound_event(make_event("morgen"), integration))
        for _ in range(20):
            await asyncio.sleep(0)

        # First turn is parked inside its send; the second must still be waiting
        assert orchestrator.locks.is_held(("int-1", "5550001"))
        assert not second.done()
        waiting = await current_conversation(conversation_store)
        assert (waiting.state_version, waiting.current_node_id) == (1, "welcome")

        release.set()
        results = await asyncio.gather(first, second)
        assert [r.source for r in results] == [ResponseSource.QUICK_REPLY, ResponseSource.FREE_TEXT]
        assert [r.node_id for r in results] == ["ask-date", "ask-time"]

        conv = await current_conversation(conversation_store)
        assert conv.state_version == 3
        assert conv.current_node_id == "ask-time"
        assert conv.variables == {"date": "2026-03-03"}
        assert len(orchestrator.locks) == 0


# ══════════════════════════════════════════════════════════════
#  FAILURES
# ══════════════════════════════════════════════════════════════

class TestFailures:
    @pytest.mark.asyncio
    async def test_dispatch_failure_leaves_state(self, run, transport, conversation_store, message_store,
                                                 integration_store):
        transport.responses = [graph_error(401, 190)]
        result = await run("reservieren")
        assert result.outcome == TurnOutcome.DISPATCH_FAILED
        assert result.send_result.is_credential_error

        conv = await current_conversation(conversation_store)
        assert conv.state_version == 0
        assert conv.current_flow_id is None

        failure = message_store.failures[0]
        assert failure.error_kind == "credential"
        assert failure.node_id == "welcome"
        assert failure.attempts == 1
        assert not (await integration_store.get("int-1")).healthy

    @pytest.mark.asyncio
    async def test_unhealthy_integration_suppresses_sends(self, orchestrator, transport):
        transport.responses = [graph_error(401, 190)]
        first = await orchestrator.process_webhook_payload(webhook(("u1", {"mid": "m1", "text": "reservieren"})))
        second = await orchestrator.process_webhook_payload(webhook(("u1", {"mid": "m2", "text": "reservieren"})))
        assert first[0].outcome == TurnOutcome.DISPATCH_FAILED
        assert second[0].outcome == TurnOutcome.SUPPRESSED
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_recipient_error_keeps_integration_healthy(self, run, transport, integration_store):
        transport.responses = [graph_error(400, 551)]
        result = await run("reservieren")
        assert result.outcome == TurnOutcome.DISPATCH_FAILED
        assert (await integration_store.get("int-1")).healthy

    @pytest.mark.asyncio
    async def test_conflict_reported(self, run, conversation_store, transport):
        conversation_store.update = AsyncMock(side_effect=ConversationConflictError("c1", 0, 1))
        result = await run("reservieren")
        assert result.outcome == TurnOutcome.CONFLICT
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_reservation_kept_when_final_update_conflicts(self, run, conversation_store, reservations):
        await run("reservieren für 2 Personen")
        await run("Heute", payload="flow:flow-reservation:node:ask-time")
        await run("19 Uhr")
        await run("2")

        update = conversation_store.update

        async def racing_update(conversation_id, patch, expected_version=None):
            if expected_version is not None:
                raise ConversationConflictError(conversation_id, expected_version, expected_version + 1)
            return await update(conversation_id, patch, expected_version)

        conversation_store.update = racing_update
        result = await run("Lisa")

        assert result.outcome == TurnOutcome.CONFLICT
        assert result.reservation.success
        conv = await current_conversation(conversation_store)
        assert conv.metadata.reservation_id == result.reservation.reservation_id
        assert conv.metadata.flow_completed
        assert list(reservations.reservations) == [result.reservation.reservation_id]

    @pytest.mark.asyncio
    async def test_store_error_contained(self, run, flow_store):
        await run("reservieren")
        flow_store.get_flow = AsyncMock(side_effect=RuntimeError("flow store down"))
        result = await run("morgen")
        assert result.outcome == TurnOutcome.ERROR
        assert result.error == "flow store down"


# ══════════════════════════════════════════════════════════════
#  WEBHOOK
# ══════════════════════════════════════════════════════════════

class TestWebhookProcessing:
    @pytest.mark.asyncio
    async def test_events_for_different_senders(self, orchestrator, transport):
        results = await orchestrator.process_webhook_payload(webhook(
            ("u1", {"mid": "m1", "text": "reservieren"}),
            ("u2", {"mid": "m2", "text": "Tisch bitte"}),
        ))
        assert [r.outcome for r in results] == [TurnOutcome.RESPONDED, TurnOutcome.RESPONDED]
        assert sorted(recipient for recipient, _, _ in transport.sent) == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_unknown_account_ignored(self, orchestrator, transport):
        results = await orchestrator.process_webhook_payload(
            webhook(("u1", {"mid": "m1", "text": "reservieren"}), account="999"),
        )
        assert results[0].outcome == TurnOutcome.IGNORED
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_non_instagram_payload(self, orchestrator):
        assert await orchestrator.process_webhook_payload({"object": "page", "entry": []}) == []
