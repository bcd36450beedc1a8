import asyncio
import json
import sys
import threading
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import playlist_app

HEADERS = {"X-Admin-Token": playlist_app.ADMIN_TOKEN}


def _wipe_db() -> None:
    db = playlist_app.SessionLocal()
    try:
        db.query(playlist_app.SongRequest).delete()
        db.query(playlist_app.TokenAccount).delete()
        db.query(playlist_app.StreamStatus).delete()
        db.query(playlist_app.AppSetting).filter(
            playlist_app.AppSetting.key == playlist_app.PLAYLIST_STATUS_KEY
        ).delete()
        db.commit()
    finally:
        db.close()
    playlist_app.playlist_service.rotation.reset()


class PlaylistApiTests(unittest.TestCase):
    def setUp(self) -> None:
        _wipe_db()
        self.client = TestClient(playlist_app.app)

    def tearDown(self) -> None:
        _wipe_db()

    def _open(self) -> None:
        response = self.client.put("/playlist/status", json={"status": "open"}, headers=HEADERS)
        self.assertEqual(response.status_code, 200, response.text)

    def _grant(self, username: str, amount: int) -> None:
        response = self.client.post(
            f"/users/{username}/vips", json={"source": "mod", "amount": amount}, headers=HEADERS
        )
        self.assertEqual(response.status_code, 200, response.text)

    def test_mutations_require_admin_token(self) -> None:
        response = self.client.post("/playlist/requests", json={"username": "alice", "text": "song"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "invalid admin token")

        wrong = self.client.post(
            "/playlist/requests",
            json={"username": "alice", "text": "song"},
            headers={"X-Admin-Token": "wrong"},
        )
        self.assertEqual(wrong.status_code, 401)

    def test_status_defaults_to_very_closed(self) -> None:
        response = self.client.get("/playlist/status")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "very_closed"})

        rejected = self.client.post(
            "/playlist/requests", json={"username": "alice", "text": "song"}, headers=HEADERS
        )
        self.assertEqual(rejected.status_code, 409)
        self.assertEqual(rejected.json()["detail"], "playlist_very_closed")

    def test_add_request_and_read_snapshot(self) -> None:
        self._open()

        first = self.client.post(
            "/playlist/requests", json={"username": "Alice", "text": "first song"}, headers=HEADERS
        )
        second = self.client.post(
            "/playlist/requests", json={"username": "bob", "text": "second song"}, headers=HEADERS
        )

        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(first.json()["position"], 0)
        self.assertEqual(first.json()["request"]["requester"], "alice")
        self.assertEqual(second.json()["position"], 1)

        snapshot = self.client.get("/playlist").json()
        self.assertEqual(snapshot["current"]["text"], "first song")
        self.assertEqual([item["text"] for item in snapshot["regular"]], ["second song"])
        self.assertEqual(snapshot["vip"], [])

    def test_duplicate_request_is_conflict(self) -> None:
        self._open()
        self.client.post("/playlist/requests", json={"username": "alice", "text": "one"}, headers=HEADERS)

        response = self.client.post(
            "/playlist/requests", json={"username": "alice", "text": "two"}, headers=HEADERS
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "duplicate_request")

    def test_vip_without_tokens_is_payment_required(self) -> None:
        self._open()

        response = self.client.post(
            "/playlist/requests", json={"username": "alice", "text": "song", "vip": True}, headers=HEADERS
        )

        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.json()["detail"], "insufficient_balance")

    def test_ambiguous_edit_is_bad_request(self) -> None:
        self._open()
        self.client.post("/playlist/requests", json={"username": "carol", "text": "current"}, headers=HEADERS)
        self._grant("alice", 2)
        for text in ("one", "two"):
            self.client.post(
                "/playlist/requests", json={"username": "alice", "text": text, "vip": True}, headers=HEADERS
            )

        response = self.client.post(
            "/playlist/requests/edit", json={"username": "alice", "command": "changed"}, headers=HEADERS
        )
        fixed = self.client.post(
            "/playlist/requests/edit", json={"username": "alice", "command": "1 changed"}, headers=HEADERS
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "argument_error")
        self.assertEqual(fixed.status_code, 200, fixed.text)
        self.assertEqual(fixed.json()["request"]["text"], "changed")

    def test_user_requests_and_balance(self) -> None:
        self._open()
        self.client.post("/playlist/requests", json={"username": "carol", "text": "current"}, headers=HEADERS)
        self._grant("alice", 3)
        self.client.post(
            "/playlist/requests", json={"username": "alice", "text": "vip song", "vip": True}, headers=HEADERS
        )

        requests = self.client.get("/users/alice/requests").json()["data"]["requests"]
        balance = self.client.get("/users/alice/vips").json()["data"]

        self.assertEqual(requests[0]["label"], "1 - vip song")
        self.assertEqual(requests[0]["tier"], "vip")
        self.assertEqual(balance["remaining"], 2)
        self.assertEqual(balance["used"], 1)

    def test_grant_rejects_unknown_source(self) -> None:
        response = self.client.post(
            "/users/alice/vips", json={"source": "lottery", "amount": 1}, headers=HEADERS
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "invalid_input")

    def test_archive_current_rotates(self) -> None:
        self._open()
        self.client.post("/playlist/requests", json={"username": "alice", "text": "one"}, headers=HEADERS)
        self.client.post("/playlist/requests", json={"username": "bob", "text": "two"}, headers=HEADERS)

        response = self.client.post("/playlist/current/archive", headers=HEADERS)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["data"]["archived"]["requester"], "alice")
        self.assertEqual(body["snapshot"]["current"]["requester"], "bob")

    def test_archive_without_current_is_not_found(self) -> None:
        response = self.client.post("/playlist/current/archive", json={"request_id": 5}, headers=HEADERS)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "not_found")

    def test_super_request_flag(self) -> None:
        self._open()
        self._grant("alice", 60)

        self.assertFalse(self.client.get("/playlist/super").json()["data"]["in_queue"])
        response = self.client.post(
            "/playlist/requests/super", json={"username": "alice", "text": "big song"}, headers=HEADERS
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["request"]["tier"], "super_vip")
        self.assertTrue(self.client.get("/playlist/super").json()["data"]["in_queue"])

    def test_stream_status_round_trip(self) -> None:
        self.assertFalse(self.client.get("/stream/status", params={"broadcaster": "Streamer"}).json()["online"])

        response = self.client.put(
            "/stream/status", json={"broadcaster": "Streamer", "online": True}, headers=HEADERS
        )

        self.assertEqual(response.json(), {"broadcaster": "streamer", "online": True})
        self.assertTrue(self.client.get("/stream/status", params={"broadcaster": "streamer"}).json()["online"])

    def test_bot_log_requires_token(self) -> None:
        self.assertEqual(self.client.post("/bot/logs", json={"message": "hi"}).status_code, 401)

        response = self.client.post("/bot/logs", json={"message": "hi"}, headers=HEADERS)

        self.assertEqual(response.json(), {"success": True})


class SystemConfigApiTests(unittest.TestCase):
    def setUp(self) -> None:
        _wipe_db()
        self.client = TestClient(playlist_app.app)

    def tearDown(self) -> None:
        defaults = {key: int(value) for key, value in playlist_app.SETTINGS_DEFAULTS.items()}
        self.client.put("/system/config", json=defaults, headers=HEADERS)
        _wipe_db()

    def test_meta_reports_version(self) -> None:
        response = self.client.get("/system/meta")

        self.assertEqual(response.json()["version"], playlist_app.API_VERSION)

    def test_update_changes_service_config(self) -> None:
        response = self.client.put(
            "/system/config", json={"super_vip_cost": 3, "max_regular_requests": 2}, headers=HEADERS
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["super_vip_cost"], 3)
        self.assertEqual(playlist_app.playlist_service.max_user_requests(), 2)
        self.assertEqual(playlist_app.playlist_service.config.super_vip_cost, 3)

    def test_update_rejects_zero_cost(self) -> None:
        response = self.client.put("/system/config", json={"super_vip_cost": 0}, headers=HEADERS)

        self.assertEqual(response.status_code, 422)


class QueueBroadcasterTests(unittest.IsolatedAsyncioTestCase):
    async def test_publish_on_loop_reaches_subscriber(self) -> None:
        broadcaster = playlist_app.QueueBroadcaster()
        queue = broadcaster.subscribe()

        broadcaster.publish_event("playlist.status", {"status": "open"})

        message = json.loads(queue.get_nowait())
        self.assertEqual(message["type"], "playlist.status")
        self.assertEqual(message["payload"], {"status": "open"})

    async def test_publish_from_worker_thread(self) -> None:
        broadcaster = playlist_app.QueueBroadcaster()
        queue = broadcaster.subscribe()

        worker = threading.Thread(target=broadcaster.publish_event, args=("snapshot", {"current": None}))
        worker.start()
        worker.join()

        message = json.loads(await asyncio.wait_for(queue.get(), timeout=1))
        self.assertEqual(message["type"], "snapshot")

    async def test_full_subscriber_is_dropped(self) -> None:
        broadcaster = playlist_app.QueueBroadcaster()
        queue = broadcaster.subscribe()
        for _ in range(queue.maxsize):
            queue.put_nowait("filler")

        broadcaster.publish_event("snapshot", {})

        self.assertFalse(broadcaster.has_listeners())

    async def test_no_listeners_is_a_no_op(self) -> None:
        broadcaster = playlist_app.QueueBroadcaster()

        broadcaster.publish_event("snapshot", {})

        self.assertFalse(broadcaster.has_listeners())


if __name__ == "__main__":
    unittest.main()
