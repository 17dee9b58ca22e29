from __future__ import annotations

from enum import Enum

from review_engine.errors import ValidationError


class ReviewFeedback(str, Enum):
    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def is_failure(self) -> bool:
        return self is ReviewFeedback.AGAIN

    # str defines all four ordering methods; each one compares by rank here
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ReviewFeedback):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ReviewFeedback):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ReviewFeedback):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ReviewFeedback):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: ReviewFeedback | str | int) -> ReviewFeedback:
        """Accept an enum member, a name/value string, or a 0-3 button index."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValidationError(f"Invalid review feedback: {value!r}")
        if isinstance(value, int):
            if 0 <= value < len(_ORDER):
                return _ORDER[value]
            raise ValidationError("feedback index must be 0, 1, 2, or 3")
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError(f"Invalid review feedback: {value!r}")


_ORDER = (ReviewFeedback.AGAIN, ReviewFeedback.HARD, ReviewFeedback.GOOD, ReviewFeedback.EASY)
_RANK = {feedback: i for i, feedback in enumerate(_ORDER)}
