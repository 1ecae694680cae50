"""Rendering of message bodies and room metadata for each side of the bridge"""

import html
from typing import Any, Dict, Optional

from roombridge.services.events import GitLabIssueAttributes, GitLabNoteEvent, MatrixEvent


def _html_paragraphs(text: str) -> str:
    return html.escape(text).replace("\n", "<br>")


def room_message_for_gitlab_note(event: GitLabNoteEvent) -> Dict[str, Any]:
    """Build ``m.room.message`` content for a note mirrored into a room."""
    body = event.object_attributes.note
    content: Dict[str, Any] = {
        "msgtype": "m.text",
        "body": body,
        "format": "org.matrix.custom.html",
        "formatted_body": _html_paragraphs(body),
    }
    if event.object_attributes.url:
        content["external_url"] = event.object_attributes.url
    return content


def comment_body_for_room_event(event: MatrixEvent) -> str:
    """Build a GitLab note body for a room message."""
    body = event.body
    if event.content.get("msgtype") == "m.emote":
        return f"*{event.sender} {body}*"
    return body


def format_issue_room_name(issue: GitLabIssueAttributes, project_path: str) -> str:
    return f"{project_path}#{issue.iid}: {issue.title}"


def format_room_topic(state: Optional[str], author: Optional[str] = None) -> str:
    if author:
        return f"Author: {author} | State: {state or 'unknown'}"
    return f"State: {state or 'unknown'}"
