"""
Approver and escalation notifications for steward.

Sent through the chat adapter into the topic a request concerns, or the
configured report topic. Notification failures are logged and never fail
the operation that triggered them.
"""

import html
import logging
from typing import Optional

from steward.cards import Card, render_approval_card
from steward.lib.constants import DEFAULT_CALLBACK_NAMESPACE
from steward.lib.errors import StewardError
from steward.models import ApprovalRequest

logger = logging.getLogger(__name__)

MAX_NOTIFICATION_LENGTH = 200


def _truncate(text: str) -> str:
    if len(text) > MAX_NOTIFICATION_LENGTH:
        return text[:MAX_NOTIFICATION_LENGTH] + "..."
    return text


class Notifier:

    def __init__(self, chat, streams: dict, report_topic_id: str | None = None,
                 namespace: str = DEFAULT_CALLBACK_NAMESPACE):
        self.chat = chat
        self.streams = streams
        self.report_topic_id = report_topic_id
        self.namespace = namespace

    def _destination(self, request: ApprovalRequest) -> Optional[str]:
        topic_id = request.subject.payload.get("topic_id")
        return str(topic_id) if topic_id else self.report_topic_id

    def _escalation(self, request: ApprovalRequest) -> str:
        stream = self.streams.get(request.category) if request.category else None
        return stream.escalation_contact if stream else ""

    def send(self, topic_id: str | None, card: Card) -> Optional[str]:
        """Post a card; returns its message id, or None if it could not be sent."""
        if topic_id is None:
            logger.debug("No destination topic for notification, skipping")
            return None
        try:
            return self.chat.send_interactive_card(topic_id, card)
        except StewardError as e:
            logger.warning(f"Notification to topic {topic_id} failed: {e}")
            return None

    def approval_requested(self, request: ApprovalRequest) -> Optional[str]:
        """Post the approval card with one button per missing role."""
        return self.send(self._destination(request), render_approval_card(request, self.namespace))

    def request_denied(self, request: ApprovalRequest, reason: str = "") -> Optional[str]:
        lines = [f"❌ <b>{html.escape(request.request_id)}</b> denied ({html.escape(request.subject.type)})"]
        for v in request.violations:
            lines.append(f"• {html.escape(v.rule_id)}: {html.escape(_truncate(v.reason))}")
        if reason:
            lines.append(html.escape(_truncate(reason)))
        return self.send(self._destination(request), Card(text="\n".join(lines)))

    def request_confirmed(self, request: ApprovalRequest) -> Optional[str]:
        text = f"✅ <b>{html.escape(request.request_id)}</b> executed ({html.escape(request.subject.type)})"
        return self.send(self._destination(request), Card(text=text))

    def request_rolled_back(self, request: ApprovalRequest, error: StewardError) -> Optional[str]:
        lines = [
            f"⚠️ <b>{html.escape(request.request_id)}</b> rolled back ({html.escape(request.subject.type)})",
            html.escape(_truncate(f"{error.kind}: {error.message}")),
        ]
        contact = self._escalation(request)
        if contact:
            lines.append(f"Escalation: {html.escape(contact)}")
        return self.send(self._destination(request), Card(text="\n".join(lines)))
