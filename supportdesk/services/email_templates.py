"""Dispute email templates and reply formatting defaults."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass
class EmailTemplate:
    id: str
    name: str
    subject: str
    body: str
    order: int


@dataclass
class ReplyFormatting:
    """Greeting, signature and tone instructions applied to drafted replies."""

    greeting: str = "Hi there"
    signature: str = "Sincerely, Our Team"
    custom_prompt: str = "Please keep responses friendly and human sounding."

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any] | None) -> ReplyFormatting:
        stored = dict((settings or {}).get("reply_formatting") or {})
        defaults = cls()
        return cls(
            greeting=str(stored.get("greeting") or defaults.greeting),
            signature=str(stored.get("signature") or defaults.signature),
            custom_prompt=str(stored.get("custom_prompt") or defaults.custom_prompt),
        )


DEFAULT_TEMPLATES: list[EmailTemplate] = [
    EmailTemplate(
        id="1",
        name="First Response",
        subject="Re: Dispute Resolution",
        body=(
            "Hi {{firstName}},\n\n"
            "I noticed you've opened a dispute for our service. I understand your concern "
            "and I'd like to help resolve this directly.\n\n"
            "Our records show that you've accessed our platform and we'd love to ensure you "
            "get the most value from it. Would you be open to discussing this before "
            "proceeding with the dispute?"
        ),
        order=1,
    ),
    EmailTemplate(
        id="2",
        name="Follow Up",
        subject="Re: Dispute Follow-up",
        body=(
            "Hi {{firstName}},\n\n"
            "I'm following up on the dispute you've filed. I noticed we haven't heard back "
            "from you yet. We're committed to ensuring every customer's satisfaction.\n\n"
            "Would you be willing to have a quick discussion about your concerns? We can "
            "also arrange a refund if you'd prefer that option."
        ),
        order=2,
    ),
    EmailTemplate(
        id="3",
        name="Final Notice",
        subject="Re: Final Notice - Dispute",
        body=(
            "Hi {{firstName}},\n\n"
            "This is our final attempt to resolve this dispute amicably. We have records of "
            "your platform usage and are prepared to provide this evidence if needed.\n\n"
            "However, we'd much prefer to resolve this directly with you. Please let us know "
            "if you'd be open to discussing this or accepting a refund."
        ),
        order=3,
    ),
]


def resolve_templates(stored: Sequence[Mapping[str, Any]] | None) -> list[EmailTemplate]:
    """User overrides sorted by ``order``; the defaults when none are stored."""

    templates: list[EmailTemplate] = []
    for raw in stored or []:
        try:
            templates.append(
                EmailTemplate(
                    id=str(raw["id"]),
                    name=str(raw.get("name") or ""),
                    subject=str(raw.get("subject") or ""),
                    body=str(raw.get("body") or ""),
                    order=int(raw.get("order") or 0),
                )
            )
        except (KeyError, TypeError, ValueError):
            continue
    if not templates:
        templates = [EmailTemplate(**asdict(t)) for t in DEFAULT_TEMPLATES]
    return sorted(templates, key=lambda t: t.order)


def render_template(text: str, values: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown placeholders are left untouched."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, text or "")


def first_name_from_sender(sender: str) -> str:
    """Best-effort first name from a ``Name <addr>`` header or bare address."""

    sender = (sender or "").strip()
    display = sender.split("<", 1)[0].strip().strip('"')
    if display and "@" not in display:
        return display.split()[0]
    local = sender.strip("<>").split("@", 1)[0]
    local = re.split(r"[._+\-]", local)[0] if local else ""
    return local.capitalize() if local else "there"


def apply_formatting(body: str, formatting: ReplyFormatting, *, first_name: str | None = None) -> str:
    """Wrap a reply body with greeting and signature, unless it already carries them."""

    text = (body or "").strip()
    greeting = formatting.greeting.replace("[Name]", first_name or "there").strip()
    greeting_words = greeting.split()
    if greeting_words and not text.lower().startswith(greeting_words[0].lower()):
        text = f"{greeting},\n\n{text}"
    if formatting.signature and formatting.signature not in text:
        text = f"{text}\n\n{formatting.signature}"
    return text
