import asyncio
import logging

import pytest
from starlette.websockets import WebSocketDisconnect

from kidfun.core.notifications import ChangeNotice, ChangeNotifier
from kidfun.modules.coordination.routes import _stop_pusher
from kidfun.modules.coordination.schemas import RsvpUpdate, ThreadCreate

API = "/api/v1"


def _notice(table="coordination_threads", actor="u1", audience=("u1", "u2")) -> ChangeNotice:
    return ChangeNotice(table=table, action="INSERT", thread_id="t1", actor_id=actor, audience=frozenset(audience))


def test_publish_reaches_only_the_audience() -> None:
    async def scenario():
        notifier = ChangeNotifier()
        ben = notifier.subscribe("u2")
        cara = notifier.subscribe("u3")

        assert notifier.publish(_notice()) == 1
        notice = await asyncio.wait_for(ben.next_notice(), timeout=1)
        assert notice.to_dict() == {
            "table": "coordination_threads", "action": "INSERT", "thread_id": "t1", "actor_id": "u1"
        }
        assert cara.queue.empty()

    asyncio.run(scenario())


def test_event_log_inserts_skip_the_actor() -> None:
    async def scenario():
        notifier = ChangeNotifier()
        ava = notifier.subscribe("u1")
        notifier.subscribe("u2")

        assert notifier.publish(_notice(table="thread_events")) == 1
        assert notifier.publish(_notice(table="thread_participants")) == 2
        notice = await asyncio.wait_for(ava.next_notice(), timeout=1)
        assert notice.table == "thread_participants"

    asyncio.run(scenario())


def test_full_queue_drops_extra_notices() -> None:
    async def scenario():
        notifier = ChangeNotifier(max_pending=1)
        ben = notifier.subscribe("u2")
        notifier.publish(_notice())
        notifier.publish(_notice())
        await asyncio.sleep(0)
        assert ben.queue.qsize() == 1

    asyncio.run(scenario())


def test_subscriber_with_closed_loop_is_dropped() -> None:
    notifier = ChangeNotifier()

    async def register():
        notifier.subscribe("u2")

    asyncio.run(register())
    assert notifier.subscriber_count("u2") == 1
    assert notifier.publish(_notice()) == 0
    assert notifier.subscriber_count() == 0


def test_manager_writes_notify_thread_participants(manager) -> None:
    async def scenario():
        notifier = manager.notifier
        ben = notifier.subscribe("u2")
        cara = notifier.subscribe("u3")

        thread_id = manager.create_thread("u1", ThreadCreate(activity_name="Soccer", invite_user_ids=["u2"]))
        notice = await asyncio.wait_for(ben.next_notice(), timeout=1)
        assert (notice.table, notice.action, notice.thread_id) == ("coordination_threads", "INSERT", thread_id)

        manager.update_rsvp(thread_id, "u2", RsvpUpdate(status="going"))
        notice = await asyncio.wait_for(ben.next_notice(), timeout=1)
        assert notice.table == "thread_participants"
        assert cara.queue.empty()

    asyncio.run(scenario())


def test_publish_failure_does_not_fail_the_write(manager, fake_db, monkeypatch) -> None:
    def broken(notice):
        raise RuntimeError("notifier down")

    monkeypatch.setattr(manager.notifier, "publish", broken)
    thread_id = manager.create_thread("u1", ThreadCreate(activity_name="Soccer"))
    assert fake_db.rows("coordination_threads", id=thread_id)


def test_socket_sends_snapshot_then_pushes_changes(client, auth_headers) -> None:
    with client.websocket_connect(f"{API}/coordination/ws?token=token-u2") as ws:
        snapshot = ws.receive_json()
        assert snapshot == {"type": "threads", "reason": None, "threads": []}

        response = client.post(
            f"{API}/coordination/threads",
            json={"activity_name": "Soccer", "invite_user_ids": ["u2"]},
            headers=auth_headers("u1"),
        )
        assert response.status_code == 201

        pushed = ws.receive_json()
        assert pushed["reason"]["table"] == "coordination_threads"
        assert pushed["reason"]["actor_id"] == "u1"
        assert [t["activity_name"] for t in pushed["threads"]] == ["Soccer"]

        ws.send_text("refetch")
        refreshed = ws.receive_json()
        assert refreshed["reason"] is None
        assert [t["id"] for t in refreshed["threads"]] == [response.json()["id"]]


def test_socket_with_bad_token_is_closed(client) -> None:
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"{API}/coordination/ws?token=bogus") as ws:
            ws.receive_json()
    assert exc.value.code == 1008


def test_stopping_a_failed_pusher_logs_its_error(caplog) -> None:
    async def scenario():
        async def broken():
            raise RuntimeError("socket closed")

        task = asyncio.create_task(broken())
        await asyncio.sleep(0)
        await _stop_pusher(task, "u2")
        assert task.done()

    with caplog.at_level(logging.WARNING, logger="kidfun.modules.coordination.routes"):
        asyncio.run(scenario())
    assert "socket closed" in caplog.text


def test_stopping_a_running_pusher_cancels_it() -> None:
    async def scenario():
        task = asyncio.create_task(asyncio.sleep(60))
        await asyncio.sleep(0)
        await _stop_pusher(task, "u2")
        assert task.cancelled()

    asyncio.run(scenario())


def test_socket_disconnect_unsubscribes(client, notifier) -> None:
    with client.websocket_connect(f"{API}/coordination/ws?token=token-u2") as ws:
        ws.receive_json()
        assert notifier.subscriber_count("u2") == 1
    assert notifier.subscriber_count("u2") == 0
