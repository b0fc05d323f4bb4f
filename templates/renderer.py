"""
Template Renderer — personalises a job's message template per recipient.

Placeholders use double braces: ``{{name}}``, ``{{ email }}``, or any key in
``Recipient.fields``. Unknown placeholders are left untouched so a typo is
visible in the delivered message rather than silently blanked.

Email bodies:
  - HTML when content_type == "html", or "auto" and the body starts with "<"
  - plain text otherwise, wrapped in a minimal HTML layout
  - subject: template subject → <title> of the body → "Message for {name}"
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any

from models.schemas import ChannelType, MessageTemplate, Recipient

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_TITLE = re.compile(r"<title>(.*?)</title>", re.IGNORECASE | re.DOTALL)

_TEXT_LAYOUT = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
    '<p style="font-size: 16px; line-height: 1.6; color: #333;">{body}</p>'
    "</div>"
)


@dataclass
class RenderedMessage:
    body: str
    subject: str = ""
    content_type: str = "text"      # text | html

    def as_metadata(self) -> dict[str, Any]:
        return {"subject": self.subject, "content_type": self.content_type}


def recipient_context(recipient: Recipient) -> dict[str, Any]:
    first_name = recipient.name.split()[0] if recipient.name.strip() else ""
    return {
        **recipient.fields,
        "id": recipient.id,
        "name": recipient.name,
        "first_name": first_name,
        "email": recipient.email,
        "chat_address": recipient.chat_address,
    }


def substitute(text: str, context: dict[str, Any], escape: bool = False) -> str:
    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if key not in context or context[key] is None:
            return match.group(0)
        value = str(context[key])
        return html.escape(value) if escape else value
    return _PLACEHOLDER.sub(replacer, text)


def is_html(template: MessageTemplate) -> bool:
    if template.content_type == "html":
        return True
    if template.content_type == "text":
        return False
    return template.body.lstrip().startswith("<")


def render(template: MessageTemplate, recipient: Recipient, channel: ChannelType) -> RenderedMessage:
    ctx = recipient_context(recipient)

    if channel == ChannelType.CHAT:
        return RenderedMessage(body=substitute(template.body, ctx), content_type="text")

    if is_html(template):
        body = substitute(template.body, ctx, escape=True)
    else:
        text = substitute(template.body, ctx)
        body = _TEXT_LAYOUT.format(body=html.escape(text).replace("\n", "<br>"))

    subject = substitute(template.subject, ctx) if template.subject else ""
    if not subject:
        match = _TITLE.search(body)
        subject = html.unescape(match.group(1).strip()) if match else ""
    if not subject:
        subject = f"Message for {recipient.label}"

    return RenderedMessage(body=body, subject=subject, content_type="html")
