import asyncio
import logging
from unittest import mock

import pytest

from fakes import ALICE, BOB, CAROL, settle, wait_until

from meshcall.net import protocol
from meshcall.net.collaborators import ParticipantIdentity
from meshcall.net.realtime_client import RealtimeError
from meshcall.rtc.group_call import GroupCallCoordinator
from meshcall.rtc.incoming import IncomingCall, IncomingCallListener
from meshcall.rtc.session import CallStatus


CONV = "group-1"


def _sent(bus, signal_type, sender, recipient=None):
    return [
        s
        for s in bus.published
        if s.type == signal_type and s.sender_id == sender and (recipient is None or s.recipient_id == recipient)
    ]


def _connected_ids(coordinator):
    return {p.participant_id for p in coordinator.participants() if p.connection_state == "connected"}


async def _start_group_call(bus, make_coordinator, chat_log):
    """Alice calls the group; Bob and Carol are left ringing."""
    incoming = {}

    for member in (BOB, CAROL):
        async def on_member_incoming(call, member=member):
            incoming[member.participant_id] = call

        await IncomingCallListener(bus, member.participant_id, on_member_incoming).start()

    alice, alice_log = make_coordinator(GroupCallCoordinator, CONV, ALICE, chat_log=chat_log)
    await alice.open()
    await wait_until(lambda: "bob" in incoming and "carol" in incoming)

    bob, bob_log = make_coordinator(GroupCallCoordinator, CONV, BOB, chat_log=chat_log)
    carol, carol_log = make_coordinator(GroupCallCoordinator, CONV, CAROL, chat_log=chat_log)
    await bob.open(incoming["bob"])
    await carol.open(incoming["carol"])
    return (alice, alice_log), (bob, bob_log), (carol, carol_log)


@pytest.mark.asyncio
async def test_caller_registers_invitees_as_pending(bus, make_coordinator, chat_log):
    (alice, alice_log), (bob, _), (carol, _) = await _start_group_call(bus, make_coordinator, chat_log)

    assert alice.status is CallStatus.CALLING
    assert {p.participant_id: p.connection_state for p in alice.participants()} == {"bob": "pending", "carol": "pending"}
    assert bob.status is CallStatus.RINGING and carol.status is CallStatus.RINGING
    assert bob.caller_id == "alice"
    requests = [s for s in bus.published if s.type == protocol.CALL_REQUEST]
    assert {s.recipient_id for s in requests} == {"bob", "carol"}
    assert all(s.group for s in requests)
    assert all(s.payload["callerName"] == "Alice" for s in requests)


@pytest.mark.asyncio
async def test_full_mesh_and_staggered_hang_up(bus, make_coordinator, chat_log):
    (alice, _), (bob, _), (carol, carol_log) = await _start_group_call(bus, make_coordinator, chat_log)

    await bob.accept()
    assert bob.status is CallStatus.CONNECTED
    assert bob.session.started_at is None
    await wait_until(lambda: _connected_ids(alice) == {"bob"} and _connected_ids(bob) == {"alice"})
    assert alice.status is CallStatus.CONNECTED
    assert carol.status is CallStatus.RINGING

    await carol.accept()
    await wait_until(
        lambda: _connected_ids(alice) == {"bob", "carol"}
        and _connected_ids(bob) == {"alice", "carol"}
        and _connected_ids(carol) == {"alice", "bob"}
    )
    # Carol was offered to by both members already in the call.
    assert len(_sent(bus, protocol.OFFER, "alice", "carol")) == 1
    assert len(_sent(bus, protocol.OFFER, "bob", "carol")) == 1
    assert _sent(bus, protocol.OFFER, "carol") == []

    local = alice.local_stream
    await alice.end_call()
    assert local.released
    assert {s.recipient_id for s in _sent(bus, protocol.CALL_ENDED, "alice")} == {"bob", "carol"}
    await wait_until(lambda: set(bob.session.participants) == {"carol"} and set(carol.session.participants) == {"bob"})
    assert bob.status is CallStatus.CONNECTED and carol.status is CallStatus.CONNECTED

    await bob.end_call()
    await wait_until(lambda: carol.status is CallStatus.ENDED)
    await wait_until(lambda: not alice.alive and not bob.alive and not carol.alive)

    assert carol_log.closed == 1
    assert len(chat_log.entries) == 3
    assert all(conv == CONV and text.startswith("Group video call - ") for conv, text in chat_log.entries)


@pytest.mark.asyncio
async def test_everyone_declining_ends_the_call(bus, make_coordinator, chat_log):
    (alice, alice_log), (bob, _), (carol, _) = await _start_group_call(bus, make_coordinator, chat_log)

    await bob.reject()
    await wait_until(lambda: set(alice.session.participants) == {"carol"})
    assert alice.status is CallStatus.CALLING
    assert "Bob declined" in alice_log.logs

    await carol.reject()
    await wait_until(lambda: alice.status is CallStatus.ENDED)
    assert chat_log.entries == []
    assert _sent(bus, protocol.CALL_ENDED, "alice") == []


@pytest.mark.asyncio
async def test_caller_hang_up_stops_ringing(bus, make_coordinator, chat_log):
    (alice, _), (bob, _), (carol, _) = await _start_group_call(bus, make_coordinator, chat_log)

    # Only the caller's hang-up matters while ringing.
    await bus.publish(protocol.make_control(protocol.CALL_ENDED, CONV, "carol", "bob", group=True))
    await bus.drain()
    assert bob.status is CallStatus.RINGING

    await alice.end_call()
    await wait_until(lambda: bob.status is CallStatus.ENDED and carol.status is CallStatus.ENDED)


@pytest.mark.asyncio
async def test_transport_failure_drops_only_that_member(bus, make_coordinator, chat_log):
    (alice, alice_log), (bob, _), (carol, _) = await _start_group_call(bus, make_coordinator, chat_log)
    await bob.accept()
    await wait_until(lambda: _connected_ids(alice) == {"bob"})

    alice_to_bob = alice.peer_link("bob")
    alice_to_bob._pc.fail()

    await wait_until(lambda: "bob" not in alice.session.participants)
    assert alice.status is CallStatus.CONNECTED
    assert set(alice.session.participants) == {"carol"}
    assert alice_to_bob.closed


async def _connected_member(make_coordinator, identity):
    member, _ = make_coordinator(GroupCallCoordinator, CONV, identity)
    await member.open(IncomingCall(CONV, "alice", "Alice", True, f"req-{identity.participant_id}"))
    await member.accept()
    return member


@pytest.mark.asyncio
async def test_glare_lower_id_keeps_its_offer(bus, make_coordinator):
    bob = await _connected_member(make_coordinator, BOB)

    await bus.publish(protocol.make_control(protocol.CALL_ACCEPTED, CONV, "carol", "bob", group=True))
    await wait_until(lambda: _sent(bus, protocol.OFFER, "bob", "carol"))
    link = bob.peer_link("carol")
    assert link.signaling_state == "have-local-offer"

    await bus.publish(protocol.make_description(CONV, "carol", "bob", "v=0\r\n", "offer", group=True))
    await bus.drain()
    await settle()

    assert _sent(bus, protocol.ANSWER, "bob", "carol") == []
    assert bob.peer_link("carol") is link
    assert link.signaling_state == "have-local-offer"


@pytest.mark.asyncio
async def test_glare_higher_id_yields_and_answers(bus, make_coordinator):
    carol = await _connected_member(make_coordinator, CAROL)

    await bus.publish(protocol.make_control(protocol.CALL_ACCEPTED, CONV, "bob", "carol", group=True))
    await wait_until(lambda: _sent(bus, protocol.OFFER, "carol", "bob"))
    first = carol.peer_link("bob")

    await bus.publish(protocol.make_description(CONV, "bob", "carol", "v=0\r\n", "offer", group=True))
    await wait_until(lambda: _sent(bus, protocol.ANSWER, "carol", "bob"))

    assert first.closed
    second = carol.peer_link("bob")
    assert second is not first
    assert second.signaling_state == "stable"


@pytest.mark.asyncio
async def test_direct_signals_do_not_reach_group_call(bus, make_coordinator):
    bob = await _connected_member(make_coordinator, BOB)

    await bus.publish(protocol.make_control(protocol.CALL_ENDED, CONV, "alice", "bob", group=False))
    await bus.drain()

    assert bob.status is CallStatus.CONNECTED
    assert set(bob.session.participants) == {"alice"}


@pytest.mark.asyncio
async def test_add_and_remove_participant_intents(bus, make_coordinator, chat_log):
    (alice, alice_log), _, _ = await _start_group_call(bus, make_coordinator, chat_log)

    dave = await alice.add_participant("dave", "Dave")
    assert dave.connection_state == "pending"
    assert {p.participant_id for p in alice_log.participants[-1]} == {"bob", "carol", "dave"}

    for pid in ("bob", "carol"):
        await alice.remove_participant(pid)
    assert alice.status is CallStatus.CALLING

    await alice.remove_participant("dave")
    assert alice.status is CallStatus.ENDED


@pytest.mark.asyncio
async def test_group_call_with_nobody_else(bus, directory, make_coordinator):
    directory.set_members("lonely", [ALICE])
    alice, log = make_coordinator(GroupCallCoordinator, "lonely", ALICE)

    await alice.open()

    assert alice.status is CallStatus.ENDED
    assert log.alerts == ["No one to call in this group."]


@pytest.mark.asyncio
async def test_one_member_leaving_keeps_the_rest_connected(bus, directory, make_coordinator):
    dave = ParticipantIdentity("dave", "Dave")
    directory.set_members("group-4", [ALICE, BOB, CAROL, dave])
    alice, _ = make_coordinator(GroupCallCoordinator, "group-4", ALICE)
    await alice.open()

    members = {}
    for identity in (BOB, CAROL, dave):
        member, _ = make_coordinator(GroupCallCoordinator, "group-4", identity)
        await member.open(IncomingCall("group-4", "alice", "Alice", True, f"req-{identity.participant_id}"))
        await member.accept()
        members[identity.participant_id] = member
        await wait_until(lambda: identity.participant_id in _connected_ids(alice))

    await wait_until(lambda: _connected_ids(alice) == {"bob", "carol", "dave"})
    await members["bob"].end_call()
    await wait_until(lambda: "bob" not in alice.session.participants)

    assert alice.status is CallStatus.CONNECTED
    assert len(alice.session.participants) == 2
    assert _connected_ids(alice) == {"carol", "dave"}


@pytest.mark.asyncio
async def test_chat_log_failure_does_not_block_teardown(bus, make_coordinator):
    chat_log = mock.AsyncMock()
    chat_log.append_system_message.side_effect = RealtimeError("insert-denied")
    (alice, alice_log), (bob, _), _ = await _start_group_call(bus, make_coordinator, chat_log)
    await bob.accept()
    await wait_until(lambda: _connected_ids(alice) == {"bob"})

    await alice.end_call()
    await wait_until(lambda: not alice.alive)

    chat_log.append_system_message.assert_awaited()
    conv, text = chat_log.append_system_message.await_args.args
    assert conv == CONV and text.startswith("Group video call - ")
    assert alice_log.closed == 1


@pytest.mark.asyncio
async def test_stale_answer_keeps_mesh_up(bus, make_coordinator, chat_log):
    (alice, _), (bob, _), _ = await _start_group_call(bus, make_coordinator, chat_log)
    await bob.accept()
    await wait_until(lambda: _connected_ids(alice) == {"bob"} and _connected_ids(bob) == {"alice"})
    bob_to_alice = bob.peer_link("alice")
    alice_to_bob = alice.peer_link("bob")

    # Bob answered Alice's offer, so his side is already stable.
    await bus.publish(protocol.make_description(CONV, "alice", "bob", "v=0\r\n", "answer", group=True))
    await bus.drain()

    assert bob.status is CallStatus.CONNECTED
    assert bob.peer_link("alice") is bob_to_alice
    assert not bob_to_alice.closed and not alice_to_bob.closed
    assert bob_to_alice.connection_state == "connected"
    assert alice.status is CallStatus.CONNECTED


@pytest.mark.asyncio
async def test_answer_without_peer_link_is_dropped(bus, make_coordinator, caplog):
    bob = await _connected_member(make_coordinator, BOB)

    with caplog.at_level(logging.WARNING, logger="meshcall.rtc.group_call"):
        await bus.publish(protocol.make_description(CONV, "carol", "bob", "v=0\r\n", "answer", group=True))
        await bus.drain()

    assert "answer from=carol without peer link" in caplog.text
    assert bob.status is CallStatus.CONNECTED
    assert bob.peer_link("carol") is None
    assert "carol" not in bob.session.participants
    assert _sent(bus, protocol.OFFER, "bob", "carol") == []


@pytest.mark.asyncio
async def test_close_during_member_lookup_opens_no_peer_link(bus, directory, make_coordinator, pcs):
    bob, bob_log = make_coordinator(GroupCallCoordinator, CONV, BOB)
    await bob.open(IncomingCall(CONV, "alice", "Alice", True, "req-bob"))
    gate = asyncio.Event()
    lookup = directory.list_other_members

    async def slow_lookup(conversation_id, self_id):
        await gate.wait()
        return await lookup(conversation_id, self_id)

    with mock.patch.object(directory, "list_other_members", side_effect=slow_lookup):
        accepting = asyncio.create_task(bob.accept())
        await wait_until(lambda: bob.local_stream is not None)
        await bob.close()
        gate.set()
        await accepting

    assert pcs.created == []
    assert bob.status is CallStatus.RINGING
    assert bob.local_stream is None
    assert bob.participants() == []
    assert _sent(bus, protocol.CALL_ACCEPTED, "bob") == []


@pytest.mark.asyncio
async def test_member_lookup_failure_on_accept_releases_media(bus, directory, make_coordinator, pcs):
    bob, bob_log = make_coordinator(GroupCallCoordinator, CONV, BOB)
    await bob.open(IncomingCall(CONV, "alice", "Alice", True, "req-bob"))

    with mock.patch.object(directory, "list_other_members", side_effect=RealtimeError("query-timeout")):
        await bob.accept()

    assert bob.status is CallStatus.ENDED
    assert bob_log.alerts == ["Could not load the conversation members."]
    assert bob.local_stream is None
    assert pcs.created == []
    assert _sent(bus, protocol.CALL_ACCEPTED, "bob") == []
    await wait_until(lambda: bob_log.closed == 1)
    assert bus.subscription_count == 0


@pytest.mark.asyncio
async def test_member_lookup_failure_on_start_ends_call(bus, directory, make_coordinator):
    alice, alice_log = make_coordinator(GroupCallCoordinator, CONV, ALICE)

    with mock.patch.object(directory, "list_other_members", side_effect=ConnectionError("not connected")):
        await alice.open()

    assert alice.status is CallStatus.ENDED
    assert alice_log.alerts == ["Could not load the conversation members."]
    assert bus.published == []
    await wait_until(lambda: alice_log.closed == 1)
    assert bus.subscription_count == 0
