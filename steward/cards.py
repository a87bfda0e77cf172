"""
Interactive cards posted to topics.

Buttons carry callback payloads of the form
<namespace>:<action>:<subject_id>[:<extra>], which steward.callbacks parses
back into events.
"""

import html
from dataclasses import dataclass, field
from typing import Optional

from steward.lib.constants import DEFAULT_CALLBACK_NAMESPACE
from steward.lib.errors import ValidationError

# Telegram caps callback_data at 64 bytes
MAX_CALLBACK_BYTES = 64


@dataclass
class Button:
    text: str
    callback_data: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"text": self.text}
        if self.callback_data is not None:
            data["callback_data"] = self.callback_data
        if self.url is not None:
            data["url"] = self.url
        return data


@dataclass
class Card:
    text: str
    buttons: list[list[Button]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "buttons": [[b.to_dict() for b in row] for row in self.buttons],
        }


@dataclass
class CallbackData:
    namespace: str
    action: str
    subject_id: str
    extra: Optional[str] = None


def encode_callback(action: str, subject_id: str, extra: str | None = None,
                    namespace: str = DEFAULT_CALLBACK_NAMESPACE) -> str:
    parts = [namespace, action, subject_id]
    if extra:
        parts.append(extra)
    for part in parts:
        if not part or ":" in part:
            raise ValidationError(subject_id, f"Invalid callback segment '{part}'")
    payload = ":".join(parts)
    if len(payload.encode("utf-8")) > MAX_CALLBACK_BYTES:
        raise ValidationError(subject_id, f"Callback payload exceeds {MAX_CALLBACK_BYTES} bytes")
    return payload


def parse_callback(payload: str) -> CallbackData:
    """Parse '<namespace>:<action>:<subject_id>[:<extra>]'.

    The extra segment may itself contain ':'.
    """
    parts = payload.split(":", 3)
    if len(parts) < 3 or not all(parts[:3]):
        raise ValidationError(payload, "Callback payload must be <namespace>:<action>:<subject_id>[:<extra>]")
    extra = parts[3] if len(parts) == 4 and parts[3] else None
    return CallbackData(namespace=parts[0], action=parts[1], subject_id=parts[2], extra=extra)


def render_perfect_pin(topic, stream, deep_link: str, namespace: str = DEFAULT_CALLBACK_NAMESPACE) -> Card:
    """The pinned identity card for a topic.

    Canonical name, deep-link back to the topic, a quick-create action and the
    stream's escalation contact.
    """
    lines = [
        f"<b>{html.escape(topic.canonical_name)}</b>",
        "",
        f"Stream: {html.escape(stream.emoji)} {html.escape(stream.slug)}",
        f"Link: {html.escape(deep_link)}",
    ]
    if stream.description:
        lines.append(html.escape(stream.description))
    if stream.escalation_contact:
        lines.append(f"Escalation: {html.escape(stream.escalation_contact)}")

    buttons = [
        [Button("🔗 Open topic", url=deep_link)],
        [Button("➕ New topic", callback_data=encode_callback("create", stream.slug, namespace=namespace))],
    ]
    return Card(text="\n".join(lines), buttons=buttons)


def render_approval_card(request, namespace: str = DEFAULT_CALLBACK_NAMESPACE) -> Card:
    """Card asking approvers to act on a request, one approve button per missing role."""
    lines = [
        f"<b>Approval needed: {html.escape(request.subject.type)}</b>",
        f"Request: <code>{html.escape(request.request_id)}</code>",
    ]
    if request.subject.summary:
        lines.append(html.escape(request.subject.summary))
    lines.append(f"Proposed by: {html.escape(request.proposer or 'unknown')}")
    lines.append(f"Expires: {request.expires_at.strftime('%Y-%m-%d %H:%M UTC')}")
    if request.received_approvals:
        done = ", ".join(f"{role} ({who})" for role, who in sorted(request.received_approvals.items()))
        lines.append(f"Approved: {html.escape(done)}")
    lines.append(f"Waiting on: {html.escape(', '.join(request.missing_roles) or 'nobody')}")

    row = [
        Button(f"✅ Approve as {role}",
               callback_data=encode_callback("approve", request.request_id, role, namespace))
        for role in request.missing_roles
    ]
    buttons = [row] if row else []
    buttons.append([Button("❌ Deny", callback_data=encode_callback("deny", request.request_id, namespace=namespace))])
    return Card(text="\n".join(lines), buttons=buttons)


def render_report_card(reports: list, forecasts: dict) -> Card:
    """Summary of audit results and capacity forecasts per stream."""
    total = sum(r.total for r in reports)
    compliant = sum(r.compliant for r in reports)
    lines = [
        "<b>Topic governance report</b>",
        f"Compliant: {compliant}/{total}",
        "",
    ]
    for report in reports:
        line = f"• {html.escape(report.category or 'all')}: {report.compliant}/{report.total} compliant"
        if report.needs_polish:
            line += f", {report.needs_polish} need polish"
        forecast = forecasts.get(report.category)
        if forecast is not None:
            line += f", {forecast.projected_utilization:.0%} projected"
            if forecast.breach_date:
                line += f" (limit hit {forecast.breach_date.isoformat()})"
        lines.append(line)
    return Card(text="\n".join(lines))
