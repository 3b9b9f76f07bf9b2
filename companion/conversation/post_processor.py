"""
Response Post-Processor

Shapes raw responder text to the host's UX policy without ever breaking a
sentence apart:

0. sanitize: drop leading bracketed debug prefixes and messy whitespace
1. persona pass: an optional injected rewrite; a failing pass is skipped
2. structure: flatten paragraphs, strip list markers and cap the sentence
   count, removing whole sentences only
3. pending tool intents: the first sentence survives verbatim and gains an
   approval cue ("Want me to do that?") when it lacks one
4. fragment check: if shaping introduced a grammar fragment that was not
   already there, the pre-structural text is returned instead
"""

import logging
import re
from typing import Callable, List, Optional, Set

from ..utils.text_utils import ends_with_terminal, split_sentences
from .types import TurnResult
from .ux_policy import DEFAULT_DESKTOP_POLICY, UXPolicy

logger = logging.getLogger("companion.conversation.post_processor")

PersonaPass = Callable[[str], str]

APPROVAL_CUE = "Want me to do that?"
APPROVAL_CUES = (
    "want me to",
    "should i",
    "would you like me to",
    "shall i",
    "can i",
    "okay?",
    "sound good?",
    "work?",
)

_DEBUG_PREFIX_RE = re.compile(r"^(?:[\U0001F300-\U0001FAFF☀-➿]\s*)?\[[^\]\n]*\]\s*")
_BULLET_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+")
_HTML_LIST_RE = re.compile(r"</?(?:ul|ol|li)>", re.IGNORECASE)

_DEFECT_PATTERNS = {
    "leading_lowercase": re.compile(r"^\s*[a-z]"),
    "leading_punctuation": re.compile(r"^\s*[,;:.!?]"),
    "doubled_punctuation": re.compile(r"[,;:]\s*[,;:.!?]|[.!?]\s+[,;:.]"),
    "dangling_tail": re.compile(r"\s[a-z]\s*$"),
}


def sanitize(text: Optional[str]) -> str:
    """Strip leading debug prefixes and normalise whitespace, keeping paragraph breaks."""
    if not text:
        return ""
    cleaned = text.strip()
    while True:
        stripped = _DEBUG_PREFIX_RE.sub("", cleaned, count=1)
        if stripped == cleaned:
            break
        cleaned = stripped
    cleaned = re.sub(r"[ \t\r\f\v]+", " ", cleaned)
    cleaned = re.sub(r" *\n *", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def find_fragment_defects(text: str) -> Set[str]:
    """
    Names of grammar fragments present in ``text``.

    Examples:
        >>> sorted(find_fragment_defects("and then it stopped. Fine"))
        ['leading_lowercase']
        >>> find_fragment_defects("All good here.")
        set()
    """
    return {name for name, pattern in _DEFECT_PATTERNS.items() if pattern.search(text or "")}


def has_approval_cue(text: str) -> bool:
    lower = text.lower()
    return any(cue in lower for cue in APPROVAL_CUES)


def with_approval_cue(sentence: str) -> str:
    if has_approval_cue(sentence):
        return sentence
    if not ends_with_terminal(sentence):
        sentence += "."
    return f"{sentence} {APPROVAL_CUE}"


def flatten_paragraphs(text: str) -> str:
    return re.sub(r"\s*\n+\s*", " ", text).strip()


def remove_bullets(text: str) -> str:
    """Drop list markers; each item joins the line before it as its own sentence."""
    text = _HTML_LIST_RE.sub("\n", text)
    lines: List[str] = []
    for line in text.split("\n"):
        if not _BULLET_RE.match(line):
            lines.append(line.strip())
            continue
        item = _BULLET_RE.sub("", line).strip()
        if not item:
            continue
        item = item[0].upper() + item[1:]
        if not ends_with_terminal(item) and not item.endswith(":"):
            item += "."
        if lines and lines[-1]:
            lines[-1] = f"{lines[-1]} {item}"
        else:
            lines.append(item)
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def _cap(text: str, max_sentences: int, keep_paragraphs: bool, lead: Optional[Callable[[str], str]] = None) -> str:
    """Keep at most ``max_sentences`` whole sentences; ``lead`` rewrites the very first one."""
    paragraphs = re.split(r"\n\s*\n", text) if keep_paragraphs else [text]
    kept_paragraphs = []
    budget = max(1, max_sentences)
    for paragraph in paragraphs:
        if budget <= 0:
            break
        sentences = split_sentences(paragraph)
        if not sentences:
            continue
        if lead is not None:
            sentences[0] = lead(sentences[0])
            lead = None
        taken = sentences[:budget]
        budget -= len(taken)
        kept_paragraphs.append(" ".join(taken))
    return "\n\n".join(kept_paragraphs)


class ResponsePostProcessor:
    def __init__(self, persona_pass: Optional[PersonaPass] = None):
        self.persona_pass = persona_pass

    def shape(self, raw_text: str, ux_policy: Optional[UXPolicy] = None, turn_result: Optional[TurnResult] = None) -> str:
        policy = ux_policy or DEFAULT_DESKTOP_POLICY
        text = sanitize(raw_text)

        if self.persona_pass is not None and text:
            try:
                text = self.persona_pass(text) or text
            except Exception as e:
                logger.warning(f"Persona pass failed, keeping unstyled text: {e}")

        if policy.user_requested_longform or not text:
            return text

        pre_structural = text
        result = text
        # Bullets first: flattening would hide the line-start markers
        if not policy.allow_bullets:
            result = remove_bullets(result)
        if not policy.allow_paragraphs:
            result = flatten_paragraphs(result)

        lead = with_approval_cue if self._awaiting_approval(turn_result) else None
        result = _cap(result, policy.max_sentences, policy.allow_paragraphs, lead=lead).strip()

        introduced = find_fragment_defects(result) - find_fragment_defects(pre_structural)
        if introduced:
            logger.warning(f"Shaping introduced fragments {sorted(introduced)}; reverting to pre-structural text")
            return pre_structural
        return result or pre_structural

    @staticmethod
    def _awaiting_approval(turn_result: Optional[TurnResult]) -> bool:
        """True when tool intents are pending and not all of them have run."""
        if turn_result is None or not turn_result.pending_tool_intents:
            return False
        executed = {r.get("intent") for r in turn_result.tool_results if isinstance(r, dict)}
        return not all(intent in executed for intent in turn_result.pending_tool_intents)
