"""
Interface for the content-moderation pre-check.

The classifier itself is an external model. The service only needs its
verdict, and treats an exception from it as a rejection.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol


@dataclass
class ModerationResult:
    is_safe: bool
    reason: Optional[str] = None
    scores: Dict[str, float] = field(default_factory=dict)


class ContentClassifier(Protocol):
    async def classify(self, data: bytes) -> ModerationResult:
        ...
