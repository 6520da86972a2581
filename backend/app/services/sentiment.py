"""
Lexicon-based polarity scoring.

Word valences come from the AFINN lexicon (about 3,400 English words and
phrases rated -5..+5). Only the sign of each match is used: the scorer
compares the balance of positive and negative words across responses.
"""
from functools import lru_cache
from typing import Tuple

from afinn import Afinn


@lru_cache()
def _lexicon() -> Afinn:
    return Afinn(language="en", emoticons=False)


def count_sentiment_words(text: str) -> Tuple[int, int]:
    """Return (positive, negative) counts of lexicon matches."""
    positive = negative = 0
    for valence in _lexicon().scores(text):
        if valence > 0:
            positive += 1
        elif valence < 0:
            negative += 1
    return positive, negative


def polarity(text: str) -> float:
    """
    Polarity in [-1, 1]: (positive - negative) / sentiment-bearing words.

    Text with no sentiment-bearing words is neutral (0.0).
    """
    positive, negative = count_sentiment_words(text)
    total = positive + negative
    if total == 0:
        return 0.0
    return (positive - negative) / total
