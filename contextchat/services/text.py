"""Small text helpers shared by prompt assembly and search normalization."""
import re
from typing import Iterable, Optional

_WHITESPACE = re.compile(r"\s+")


def normalize(value: Optional[str]) -> str:
    """Trim and collapse every whitespace run to a single space."""
    return _WHITESPACE.sub(" ", str(value or "")).strip()


def bullets(items: Iterable[str], cap: int = 5) -> str:
    """Render non-empty items as a dash list, keeping at most ``cap`` of them."""
    kept = [item for item in items if item][:cap]
    return "\n".join(f"- {item}" for item in kept)
