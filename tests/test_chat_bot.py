import sys
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import bot.chat_bot as chat_bot


class CommandRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = AsyncMock()
        self.send = AsyncMock()
        self.router = chat_bot.CommandRouter(
            self.backend,
            self.send,
            commands_map=chat_bot.load_commands("/nonexistent/commands.yml"),
            messages=dict(chat_bot.DEFAULT_MESSAGES),
        )

    def _ctx(self, text: str, *, is_mod: bool = False) -> chat_bot.ChatContext:
        return chat_bot.ChatContext(user="alice", text=text, is_mod=is_mod, message_id="msg-1")

    async def test_non_command_is_ignored(self) -> None:
        handled = await self.router.dispatch(self._ctx("hello chat"))

        self.assertFalse(handled)
        self.send.assert_not_called()

    async def test_unknown_command_is_ignored(self) -> None:
        self.assertFalse(await self.router.dispatch(self._ctx("!dance")))

    async def test_request_alias_replies_with_position(self) -> None:
        self.backend.add_request.return_value = {"request": {"text": "Artist - Song"}, "position": 2}

        handled = await self.router.dispatch(self._ctx("!SR Artist - Song"))

        self.assertTrue(handled)
        self.backend.add_request.assert_awaited_once_with("alice", "Artist - Song")
        self.send.assert_awaited_once_with('@alice "Artist - Song" is #2 in the queue', "msg-1")

    async def test_request_that_plays_now_uses_playing_message(self) -> None:
        self.backend.add_request.return_value = {"request": {"text": "Song"}, "position": 0}

        await self.router.dispatch(self._ctx("!request Song"))

        self.send.assert_awaited_once_with('@alice "Song" is up right now', "msg-1")

    async def test_vip_command_sets_vip_flag(self) -> None:
        self.backend.add_request.return_value = {"request": {"text": "Song"}, "position": 1}

        await self.router.dispatch(self._ctx("!vip Song"))

        self.backend.add_request.assert_awaited_once_with("alice", "Song", vip=True)

    async def test_backend_outcome_maps_to_message(self) -> None:
        self.backend.add_request.side_effect = chat_bot.BackendError(409, "duplicate_request")

        await self.router.dispatch(self._ctx("!request Song"))

        self.send.assert_awaited_once_with(
            "@alice you already have a request in the queue, use !edit to change it", "msg-1"
        )

    async def test_unknown_backend_detail_uses_failed_message(self) -> None:
        self.backend.edit_request.side_effect = chat_bot.BackendError(500, "boom")

        await self.router.dispatch(self._ctx("!edit new text"))

        self.send.assert_awaited_once_with("@alice failed: boom", "msg-1")

    async def test_unexpected_error_is_reported(self) -> None:
        self.backend.promote_request.side_effect = ValueError("bad payload")

        with patch.object(chat_bot, "push_console_event", new=AsyncMock()) as console:
            await self.router.dispatch(self._ctx("!promote"))

        console.assert_awaited_once()
        self.send.assert_awaited_once_with("@alice failed: bad payload", "msg-1")

    async def test_mod_only_commands_reject_viewers(self) -> None:
        await self.router.dispatch(self._ctx("!open"))

        self.backend.set_playlist_status.assert_not_called()
        self.send.assert_awaited_once_with("@alice only moderators can do that", "msg-1")

    async def test_mod_can_change_status(self) -> None:
        await self.router.dispatch(self._ctx("!veryclose", is_mod=True))

        self.backend.set_playlist_status.assert_awaited_once_with("very_closed")

    async def test_remove_forwards_mod_flag(self) -> None:
        self.backend.remove_request.return_value = {"request": {"text": "Song"}}

        await self.router.dispatch(self._ctx("!oops 2", is_mod=True))

        self.backend.remove_request.assert_awaited_once_with("alice", "2", is_mod=True)
        self.send.assert_awaited_once_with('@alice removed "Song"', "msg-1")

    async def test_give_vip_parses_receiver_and_amount(self) -> None:
        await self.router.dispatch(self._ctx("!givevip @Bob 3", is_mod=True))

        self.backend.grant_vips.assert_awaited_once_with("Bob", 3)
        self.send.assert_awaited_once_with("Gave 3 VIP to Bob", "msg-1")

    async def test_give_vip_rejects_bad_amount(self) -> None:
        await self.router.dispatch(self._ctx("!givevip bob lots", is_mod=True))

        self.backend.grant_vips.assert_not_called()
        self.send.assert_awaited_once_with("@alice that did not look right, check the command", "msg-1")

    async def test_gift_requires_receiver(self) -> None:
        await self.router.dispatch(self._ctx("!gift"))

        self.backend.gift_vip.assert_not_called()

    async def test_list_joins_labels(self) -> None:
        self.backend.user_requests.return_value = {
            "data": {"requests": [{"label": "1 - one"}, {"label": "two"}]}
        }

        await self.router.dispatch(self._ctx("!list"))

        self.send.assert_awaited_once_with("@alice your requests: 1 - one, two", "msg-1")

    async def test_vips_reports_balance(self) -> None:
        self.backend.token_account.return_value = {"data": {"remaining": 4, "super_vip_cost": 50}}

        await self.router.dispatch(self._ctx("!tokens"))

        self.send.assert_awaited_once_with(
            "@alice you have 4 VIP tokens, a SuperVIP costs more than 50", "msg-1"
        )

    async def test_archive_stays_quiet(self) -> None:
        await self.router.dispatch(self._ctx("!next", is_mod=True))

        self.backend.archive_current.assert_awaited_once()
        self.send.assert_not_called()

    async def test_announces_rotation(self) -> None:
        await self.router.announce_event(
            {
                "type": "current.changed",
                "payload": {"previous": None, "current": {"text": "Song", "requester": "bob"}},
            }
        )

        self.send.assert_awaited_once_with('Now playing "Song" requested by @bob', None)

    async def test_announces_empty_queue(self) -> None:
        await self.router.announce_event(
            {"type": "current.changed", "payload": {"previous": {"text": "Song"}, "current": None}}
        )

        self.send.assert_awaited_once_with("That was the last request in the queue", None)

    async def test_announces_status(self) -> None:
        await self.router.announce_event({"type": "playlist.status", "payload": {"status": "open"}})

        self.send.assert_awaited_once_with("The playlist is now open!", None)

    async def test_snapshots_are_not_announced(self) -> None:
        await self.router.announce_event({"type": "snapshot", "payload": {}})

        self.send.assert_not_called()


class StreamStatusReportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._original_backend = chat_bot.backend
        self.backend = AsyncMock()
        chat_bot.backend = self.backend
        self.bot = SimpleNamespace(settings=SimpleNamespace(channel_login="streamer"))
        self.bot._report_stream_status = lambda online: chat_bot.SongQueueBot._report_stream_status(
            self.bot, online
        )

    async def asyncTearDown(self) -> None:
        chat_bot.backend = self._original_backend

    async def test_stream_online_is_reported(self) -> None:
        await chat_bot.SongQueueBot.event_stream_online(self.bot, SimpleNamespace())

        self.backend.set_stream_status.assert_awaited_once_with("streamer", True)
        self.backend.push_bot_log.assert_awaited_once()

    async def test_stream_offline_is_reported(self) -> None:
        await chat_bot.SongQueueBot.event_stream_offline(self.bot, SimpleNamespace())

        self.backend.set_stream_status.assert_awaited_once_with("streamer", False)

    async def test_backend_failure_is_logged_not_raised(self) -> None:
        self.backend.set_stream_status.side_effect = chat_bot.BackendError(503, "persistence_failure")

        with patch.object(chat_bot, "push_console_event", new=AsyncMock()) as console:
            await chat_bot.SongQueueBot.event_stream_online(self.bot, SimpleNamespace())

        console.assert_awaited_once()
        self.assertEqual(console.await_args.args[0], "error")


class ConfigFileTests(unittest.TestCase):
    def test_commands_file_overrides_aliases(self) -> None:
        with tempfile.NamedTemporaryFile("w", suffix=".yml", delete=False) as handle:
            handle.write("prefix: '?'\nrequest: song\n")
            path = handle.name
        try:
            commands = chat_bot.load_commands(path)
        finally:
            Path(path).unlink()

        self.assertEqual(commands["prefix"], ["?"])
        self.assertEqual(commands["request"], ["song"])
        self.assertEqual(commands["vip"], chat_bot.DEFAULT_COMMANDS["vip"])

    def test_messages_file_overrides_templates(self) -> None:
        with tempfile.NamedTemporaryFile("w", suffix=".yml", delete=False) as handle:
            handle.write("status_open: 'Requests are open'\n")
            path = Path(handle.name)
        try:
            messages = chat_bot.load_messages(path)
        finally:
            path.unlink()

        self.assertEqual(messages["status_open"], "Requests are open")
        self.assertEqual(messages["failed"], chat_bot.DEFAULT_MESSAGES["failed"])

    def test_every_outcome_has_a_message(self) -> None:
        for key in (
            "no_request_entered",
            "playlist_closed",
            "playlist_very_closed",
            "duplicate_request",
            "only_one_super",
            "insufficient_balance",
            "argument_error",
            "persistence_failure",
        ):
            self.assertIn(key, chat_bot.DEFAULT_MESSAGES)


class BotSettingsTests(unittest.TestCase):
    def test_missing_lists_unset_values(self) -> None:
        settings = chat_bot.BotSettings.from_env(
            {"BOT_TOKEN": "token", "STREAMER_CHANNEL": "  Streamer ", "TWITCH_CLIENT_ID": " "}
        )

        self.assertEqual(settings.channel_login, "streamer")
        self.assertIsNone(settings.client_id)
        self.assertEqual(
            settings.missing(),
            [
                "BOT_REFRESH_TOKEN",
                "TWITCH_CLIENT_ID",
                "TWITCH_CLIENT_SECRET",
                "BOT_USER_ID",
                "STREAMER_CHANNEL_ID",
            ],
        )


if __name__ == "__main__":
    unittest.main()
