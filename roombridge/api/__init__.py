"""API routes"""

from roombridge.api import appservice, connections, instances, user_links, webhooks

__all__ = ["appservice", "connections", "instances", "user_links", "webhooks"]
