import unittest


class FormattingTests(unittest.TestCase):
    def test_note_content_escapes_html_and_links_note(self):
        from roombridge.services.events import GitLabNoteEvent
        from roombridge.services.formatting import room_message_for_gitlab_note

        event = GitLabNoteEvent(
            user={"name": "Alice"},
            project={"id": 1, "path_with_namespace": "org/repo"},
            object_attributes={
                "id": 3,
                "note": "a <b>\nline two",
                "noteable_type": "Issue",
                "url": "https://gitlab.example/org/repo/-/issues/1#note_3",
            },
        )

        content = room_message_for_gitlab_note(event)

        self.assertEqual(content["msgtype"], "m.text")
        self.assertEqual(content["body"], "a <b>\nline two")
        self.assertEqual(content["formatted_body"], "a &lt;b&gt;<br>line two")
        self.assertEqual(content["external_url"], "https://gitlab.example/org/repo/-/issues/1#note_3")

    def test_room_name_and_topic(self):
        from roombridge.services.events import GitLabIssueAttributes
        from roombridge.services.formatting import format_issue_room_name, format_room_topic

        issue = GitLabIssueAttributes(id=1, iid=42, title="Crash on start")

        self.assertEqual(format_issue_room_name(issue, "org/repo"), "org/repo#42: Crash on start")
        self.assertEqual(format_room_topic("opened", "Alice"), "Author: Alice | State: opened")
        self.assertEqual(format_room_topic("closed"), "State: closed")


if __name__ == "__main__":
    unittest.main()
