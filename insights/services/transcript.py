"""Transcript building for model prompts.

Messages are tagged ``MSG-0``, ``MSG-1``... in the prompt so the model can
point back at them without seeing real ids; :class:`Transcript` maps the tags
back afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from insights.domain.models import Message


@dataclass
class Transcript:
    text: str
    tags: dict[str, str] = field(default_factory=dict)

    def resolve(self, tag: str | None) -> str | None:
        """Return the message id behind *tag*, or None for unknown tags."""
        if not tag:
            return None
        tag = tag.strip().strip("[]").upper()
        return self.tags.get(tag)

    def __len__(self) -> int:
        return len(self.tags)


def build_transcript(messages: list[Message]) -> Transcript:
    lines: list[str] = []
    tags: dict[str, str] = {}
    for idx, message in enumerate(messages):
        tag = f"MSG-{idx}"
        tags[tag] = message.id
        lines.append(
            f"[{tag}] [{message.created_at.isoformat()}] "
            f"({message.sender_id}) {message.content}"
        )
    return Transcript(text="\n".join(lines), tags=tags)
