"""Keyword topic extraction for memory tags and loop detection."""

from collections import Counter
from typing import List, Optional

from ..utils.text_utils import tokenize

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "about", "from", "into", "that", "this", "these", "those", "there", "their", "they",
    "them", "then", "than", "what", "when", "where", "which", "while", "who", "whom", "why",
    "how", "have", "has", "had", "been", "being", "were", "was", "are", "is", "am", "will",
    "would", "could", "should", "just", "really", "very", "some", "something", "anything",
    "your", "you're", "yours", "mine", "i'm", "i've", "i'll", "it's", "that's", "don't",
    "didn't", "doesn't", "can't", "won't", "also", "like", "know", "think", "want", "feel",
    "maybe", "okay", "yeah", "well", "still", "even", "much", "more", "most", "here",
    "today", "right", "back", "again", "make", "made", "going", "thing", "things",
})

# keyword -> canonical topic, so "guitar" and "song" both read as music
TOPIC_ALIASES = {
    "song": "music", "songs": "music", "guitar": "music", "playlist": "music", "album": "music",
    "band": "music", "spotify": "music",
    "job": "work", "boss": "work", "office": "work", "meeting": "work", "deadline": "work",
    "coworker": "work", "shift": "work",
    "mom": "family", "dad": "family", "mother": "family", "father": "family",
    "sister": "family", "brother": "family", "parents": "family",
    "sleep": "sleep", "insomnia": "sleep", "nap": "sleep", "dream": "sleep", "dreams": "sleep",
    "dinner": "food", "lunch": "food", "breakfast": "food", "cooking": "food", "recipe": "food",
    "movie": "movies", "film": "movies", "show": "movies", "series": "movies",
    "game": "games", "gaming": "games",
}


def extract_topics(text: str, limit: int = 3) -> List[str]:
    """
    Most frequent content words, aliased to canonical topics.

    Examples:
        >>> extract_topics("My boss moved the deadline again, work is chaos")
        ['work', 'moved', 'chaos']
    """
    counts: Counter = Counter()
    order: List[str] = []
    for token in tokenize(text):
        token = token.strip("'")
        topic = TOPIC_ALIASES.get(token)
        if topic is None:
            if len(token) < 4 or token in STOPWORDS or token.isdigit():
                continue
            topic = token
        if topic not in counts:
            order.append(topic)
        counts[topic] += 1
    ranked = sorted(order, key=lambda t: (-counts[t], order.index(t)))
    return ranked[:limit]


def primary_topic(text: str) -> Optional[str]:
    topics = extract_topics(text, limit=1)
    return topics[0] if topics else None
