import asyncio
import logging
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

logging.disable(logging.CRITICAL)

ISSUE_URL = "https://example.com/org/repo/issues/42"


def _note_event(note_id, *, body="hello", with_repository=True, username="alice"):
    from roombridge.services.events import GitLabNoteEvent

    payload = {
        "object_kind": "note",
        "user": {"name": "Alice", "username": username, "avatar_url": "https://example.com/a.png"},
        "project": {"id": 1, "path_with_namespace": "org/repo", "web_url": "https://example.com/org/repo"},
        "object_attributes": {
            "id": note_id,
            "note": body,
            "noteable_type": "Issue",
            "noteable_id": 900,
            "url": f"{ISSUE_URL}#note_{note_id}",
        },
        "issue": {"id": 900, "iid": 42, "title": "Broken", "state": "opened"},
    }
    if with_repository:
        payload["repository"] = {"name": "repo", "url": "git@example.com:org/repo.git"}
    return GitLabNoteEvent(**payload)


def _room_event(body="from the room", event_id="$evt1", sender="@bob:example.org", msgtype="m.text"):
    from roombridge.services.events import MatrixEvent

    return MatrixEvent(
        event_id=event_id,
        room_id="!room:example.org",
        sender=sender,
        type="m.room.message",
        content={"msgtype": msgtype, "body": body},
    )


def _issue_event(changes, *, state="opened", title="New title"):
    from roombridge.services.events import GitLabIssueEvent

    return GitLabIssueEvent(
        object_kind="issue",
        user={"name": "Alice", "username": "alice"},
        project={"id": 1, "path_with_namespace": "org/repo"},
        object_attributes={"id": 900, "iid": 42, "title": title, "state": state, "action": "update"},
        changes=changes,
    )


def _sink():
    return SimpleNamespace(
        send_message=AsyncMock(return_value="$sent"),
        send_reaction=AsyncMock(return_value="$reaction"),
        set_room_metadata=AsyncMock(),
        send_state_event=AsyncMock(),
        create_room=AsyncMock(return_value="!new:example.org"),
    )


def _identities(client=None):
    from roombridge.services.identity import RoomIdentity

    return SimpleNamespace(
        resolve_room_identity=AsyncMock(
            return_value=RoomIdentity(user_id="@_gitlab_alice:example.org", display_name="Alice")
        ),
        resolve_tracker_credentials=AsyncMock(return_value=client),
    )


class _ConnectionTestCase(unittest.IsolatedAsyncioTestCase):
    def make_connection(self, *, client=None, grace_period=0.0, on_state_change=None):
        from roombridge.services.comment_ledger import CommentLedger
        from roombridge.services.issue_connection import GitLabIssueConnection, IssueConnectionState

        self.ledger = CommentLedger()
        self.sink = _sink()
        self.identities = _identities(client)
        state = IssueConnectionState(instance="gl", projects=["org", "repo"], state="opened", iid=42, id=900)
        return GitLabIssueConnection(
            "!room:example.org",
            state,
            ISSUE_URL,
            instance_url="https://example.com",
            ledger=self.ledger,
            identities=self.identities,
            sink=self.sink,
            grace_period=grace_period,
            on_state_change=on_state_change,
        )


class StateEventMatchingTests(_ConnectionTestCase):
    def test_matches_type_and_state_key(self):
        from roombridge.services.issue_connection import GitLabIssueConnection

        conn = self.make_connection()
        self.assertTrue(conn.is_interested_in_state_event(GitLabIssueConnection.CANONICAL_EVENT_TYPE, ISSUE_URL))

    def test_rejects_wrong_type(self):
        conn = self.make_connection()
        self.assertFalse(conn.is_interested_in_state_event("m.room.topic", ISSUE_URL))

    def test_rejects_wrong_state_key(self):
        from roombridge.services.issue_connection import GitLabIssueConnection

        conn = self.make_connection()
        self.assertFalse(
            conn.is_interested_in_state_event(
                GitLabIssueConnection.CANONICAL_EVENT_TYPE, "https://example.com/org/repo/issues/43"
            )
        )
        self.assertFalse(
            conn.is_interested_in_state_event(GitLabIssueConnection.CANONICAL_EVENT_TYPE, ISSUE_URL + "/")
        )

    def test_rejects_both_wrong(self):
        conn = self.make_connection()
        self.assertFalse(conn.is_interested_in_state_event("m.room.name", ""))

    def test_str_and_properties(self):
        conn = self.make_connection()
        self.assertEqual(conn.project_path, "org/repo")
        self.assertEqual(conn.issue_number, 42)
        self.assertEqual(str(conn), "GitLabIssue https://example.com/org/repo#42")
        self.assertTrue(conn.is_for_issue("gl", "org/repo", 42))
        self.assertFalse(conn.is_for_issue("gl", "org/repo", 41))


class InboundCommentTests(_ConnectionTestCase):
    async def test_new_comment_is_sent_once_as_resolved_author(self):
        conn = self.make_connection()

        await conn.on_comment_created(_note_event("c-1"))

        self.sink.send_message.assert_awaited_once()
        room_id, content, event_type, user_id = self.sink.send_message.await_args.args
        self.assertEqual(room_id, "!room:example.org")
        self.assertEqual(event_type, "m.room.message")
        self.assertEqual(user_id, "@_gitlab_alice:example.org")
        self.assertEqual(content["body"], "hello")
        self.identities.resolve_room_identity.assert_awaited_once()
        self.assertTrue(self.ledger.has_been_processed("gl", "org/repo", "42", "c-1"))

    async def test_duplicate_webhook_is_delivered_once(self):
        conn = self.make_connection()

        await conn.on_comment_created(_note_event("c-1"))
        await conn.on_comment_created(_note_event("c-1"))

        self.assertEqual(self.sink.send_message.await_count, 1)

    async def test_concurrent_duplicate_webhooks_are_delivered_once(self):
        conn = self.make_connection(grace_period=0.01)

        await asyncio.gather(*(conn.on_comment_created(_note_event("c-1")) for _ in range(5)))

        self.assertEqual(self.sink.send_message.await_count, 1)

    async def test_already_processed_comment_is_dropped_silently(self):
        conn = self.make_connection()
        self.ledger.mark_processed("gl", "org/repo", "42", "c-9")

        await conn.on_comment_created(_note_event("c-9"))

        self.sink.send_message.assert_not_awaited()
        self.identities.resolve_room_identity.assert_not_awaited()

    async def test_mark_made_during_grace_period_suppresses_delivery(self):
        conn = self.make_connection(grace_period=0.05)

        task = asyncio.create_task(conn.on_comment_created(_note_event("c-5")))
        await asyncio.sleep(0)
        # A room->GitLab post finishing while the webhook handler waits.
        self.ledger.mark_processed("gl", "org/repo", 42, "c-5")
        await task

        self.sink.send_message.assert_not_awaited()

    async def test_webhook_without_origin_marker_is_delivered_once(self):
        conn = self.make_connection(grace_period=30.0)

        # Unmarked hooks are not delayed.
        await asyncio.wait_for(conn.on_comment_created(_note_event(9, with_repository=False)), timeout=5)
        await conn.on_comment_created(_note_event(9, with_repository=False))

        self.sink.send_message.assert_awaited_once()
        self.assertTrue(self.ledger.has_been_processed("gl", "org/repo", 42, 9))

    async def test_delivery_failure_propagates(self):
        conn = self.make_connection()
        self.sink.send_message.side_effect = RuntimeError("homeserver down")

        with self.assertRaises(RuntimeError):
            await conn.on_comment_created(_note_event("c-1"))
        # Marked before sending, so a redelivered webhook cannot double-post.
        self.assertTrue(self.ledger.has_been_processed("gl", "org/repo", "42", "c-1"))


class OutboundCommentTests(_ConnectionTestCase):
    async def test_room_message_creates_one_note_and_marks_it(self):
        client = Mock()
        client.create_issue_note.return_value = SimpleNamespace(id="c-2")
        conn = self.make_connection(client=client)

        await conn.on_matrix_issue_comment(_room_event("ship it"))

        client.create_issue_note.assert_called_once_with(["org", "repo"], 42, "ship it")
        self.identities.resolve_tracker_credentials.assert_awaited_once_with(
            "@bob:example.org", "https://example.com"
        )
        self.assertTrue(self.ledger.has_been_processed("gl", "org/repo", "42", "c-2"))

    async def test_echo_webhook_of_room_message_is_suppressed(self):
        client = Mock()
        client.create_issue_note.return_value = SimpleNamespace(id="c-2")
        conn = self.make_connection(client=client)

        await conn.on_matrix_issue_comment(_room_event("ship it"))
        await conn.on_comment_created(_note_event("c-2", body="ship it"))

        self.sink.send_message.assert_not_awaited()

    async def test_allow_echo_leaves_ledger_untouched(self):
        client = Mock()
        client.create_issue_note.return_value = SimpleNamespace(id=77)
        conn = self.make_connection(client=client)

        await conn.on_matrix_issue_comment(_room_event(), allow_echo=True)

        client.create_issue_note.assert_called_once()
        self.assertFalse(self.ledger.has_been_processed("gl", "org/repo", "42", "77"))

    async def test_unlinked_user_gets_not_bridged_reaction(self):
        from roombridge.services.issue_connection import NOT_BRIDGED_KEY

        conn = self.make_connection(client=None)

        await conn.on_matrix_issue_comment(_room_event(event_id="$abc"))

        self.sink.send_reaction.assert_awaited_once_with("!room:example.org", "$abc", NOT_BRIDGED_KEY)
        self.assertEqual(len(self.ledger), 0)

    async def test_gitlab_failure_propagates_without_marking(self):
        client = Mock()
        client.create_issue_note.side_effect = RuntimeError("500")
        conn = self.make_connection(client=client)

        with self.assertRaises(RuntimeError):
            await conn.on_matrix_issue_comment(_room_event())
        self.assertEqual(len(self.ledger), 0)

    async def test_emote_is_attributed_in_body(self):
        client = Mock()
        client.create_issue_note.return_value = SimpleNamespace(id=1)
        conn = self.make_connection(client=client)

        await conn.on_matrix_issue_comment(_room_event("waves", msgtype="m.emote"))

        client.create_issue_note.assert_called_once_with(["org", "repo"], 42, "*@bob:example.org waves*")

    async def test_message_event_forwards_to_comment(self):
        client = Mock()
        client.create_issue_note.return_value = SimpleNamespace(id=5)
        conn = self.make_connection(client=client)

        await conn.on_message_event(_room_event("hello"))

        client.create_issue_note.assert_called_once()

    async def test_sync_command_is_not_posted(self):
        client = Mock()
        conn = self.make_connection(client=client)

        await conn.on_message_event(_room_event("!sync"))

        client.create_issue_note.assert_not_called()
        self.identities.resolve_tracker_credentials.assert_not_awaited()


class IssueEditTests(_ConnectionTestCase):
    async def test_no_changes_is_a_noop(self):
        conn = self.make_connection()

        await conn.on_issue_edited(_issue_event(None))
        await conn.on_issue_edited(_issue_event({}))

        self.sink.set_room_metadata.assert_not_awaited()
        self.sink.send_state_event.assert_not_awaited()

    async def test_title_change_renames_room(self):
        conn = self.make_connection()

        await conn.on_issue_edited(
            _issue_event({"title": {"previous": "Broken", "current": "New title"}})
        )

        self.sink.set_room_metadata.assert_awaited_once_with(
            "!room:example.org", "name", "org/repo#42: New title"
        )

    async def test_state_change_updates_topic_and_room_state(self):
        on_state_change = AsyncMock()
        conn = self.make_connection(on_state_change=on_state_change)

        await conn.on_issue_edited(
            _issue_event({"state_id": {"previous": 1, "current": 2}}, state="closed")
        )

        self.assertEqual(conn.state.state, "closed")
        self.sink.set_room_metadata.assert_awaited_once_with("!room:example.org", "topic", "State: closed")
        self.sink.send_state_event.assert_awaited_once()
        _room, event_type, state_key, content = self.sink.send_state_event.await_args.args
        self.assertEqual(event_type, "uk.half-shot.matrix-github.gitlab.issue")
        self.assertEqual(state_key, ISSUE_URL)
        self.assertEqual(content["state"], "closed")
        on_state_change.assert_awaited_once_with(conn)


class CreateRoomForIssueTests(unittest.IsolatedAsyncioTestCase):
    async def test_creates_room_with_state_event(self):
        from roombridge.services.comment_ledger import CommentLedger
        from roombridge.services.issue_connection import GitLabIssueConnection

        sink = _sink()
        issue = {
            "id": 900,
            "iid": 42,
            "state": "opened",
            "web_url": ISSUE_URL,
            "references": {"full": "org/repo#42"},
            "author": {"name": "Alice"},
        }

        conn = await GitLabIssueConnection.create_room_for_issue(
            "gl",
            "https://example.com",
            issue,
            ["org", "repo"],
            sink=sink,
            ledger=CommentLedger(),
            identities=_identities(),
        )

        self.assertEqual(conn.room_id, "!new:example.org")
        self.assertEqual(conn.state_key, ISSUE_URL)
        kwargs = sink.create_room.await_args.kwargs
        self.assertEqual(kwargs["name"], "org/repo#42")
        self.assertEqual(kwargs["topic"], "Author: Alice | State: opened")
        initial = kwargs["initial_state"][0]
        self.assertEqual(initial["type"], GitLabIssueConnection.CANONICAL_EVENT_TYPE)
        self.assertEqual(initial["state_key"], ISSUE_URL)
        self.assertEqual(
            initial["content"],
            {"instance": "gl", "projects": ["org", "repo"], "state": "opened", "iid": 42, "id": 900},
        )


if __name__ == "__main__":
    unittest.main()
