"""
Softened fallback lines.

When the responder cannot produce a reply the host sees one of these instead
of any diagnostic text. Lines are keyed by failure class; presence mode has
its own quieter variants. The table is injectable so a persona can supply
its own phrasing.
"""

from typing import Dict, Mapping, Optional

TIMEOUT = "timeout"
PROVIDER_ERROR = "provider_error"
EMPTY_REPLY = "empty_reply"
BOTH_FAILURE = "both_failure"
INTERNAL_ERROR = "internal_error"

DEFAULT_LINES: Dict[str, str] = {
    TIMEOUT: "Sorry, my thoughts are moving slowly right now. Give me a second and ask me again?",
    PROVIDER_ERROR: "I'm having trouble reaching my words right now. Could you try again in a moment?",
    EMPTY_REPLY: "I lost my train of thought for a second. Could you say that again?",
    BOTH_FAILURE: "I'm having trouble thinking clearly right now. Give me a moment, or try again in a bit.",
    INTERNAL_ERROR: "Something tangled up on my side. Could you try that again?",
}

PRESENCE_LINES: Dict[str, str] = {
    BOTH_FAILURE: "Hold still… I'm with you. I'm just pulling myself back together.",
    TIMEOUT: "I'm here. Give me just a moment.",
}

# Last resort when even the shaped text is unusable
FINAL_FALLBACK = "I'm having trouble formulating a response right now. Could you try rephrasing?"


class FallbackTable:
    def __init__(
        self,
        lines: Optional[Mapping[str, str]] = None,
        presence_lines: Optional[Mapping[str, str]] = None,
        final: str = FINAL_FALLBACK,
    ):
        self.lines = {**DEFAULT_LINES, **(lines or {})}
        self.presence_lines = {**PRESENCE_LINES, **(presence_lines or {})}
        self.final = final

    def message(self, failure_class: str, presence_mode: bool = False) -> str:
        if presence_mode and failure_class in self.presence_lines:
            return self.presence_lines[failure_class]
        return self.lines.get(failure_class, self.final)
