"""
Record and result types shared by the similarity backends.
"""

from dataclasses import dataclass
from typing import Dict, List

SCORE_DECIMALS = 4


@dataclass
class VectorRecord:
    """Represents an embedded document held by a similarity backend."""

    id: str
    """Document identifier (unique within one index)"""

    text: str
    """Document text returned with search hits"""

    vector: List[float]
    """The embedding of the text"""


@dataclass
class QueryResult:
    """Represents a ranked search hit."""

    id: str
    """Identifier of the matching document"""

    text: str
    """Text of the matching document"""

    score: float
    """Similarity score, rounded to four decimals"""

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.id, "text": self.text, "score": self.score}


def round_score(score: float) -> float:
    """Round a raw score for reporting."""
    return round(float(score), SCORE_DECIMALS)
