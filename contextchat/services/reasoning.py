"""Removal of chain-of-thought markup from model output."""
import re

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_FENCED_REASONING = re.compile(r"```(?:thinking|reasoning).*?```", re.IGNORECASE | re.DOTALL)
_STRAY_THINK_TAG = re.compile(r"</?think>", re.IGNORECASE)


def strip(text: str, skip_strip: bool = False) -> str:
    """
    Remove reasoning blocks and return the remaining text trimmed.

    Removes ``<think>...</think>`` spans, fenced blocks tagged ``thinking``
    or ``reasoning``, and any unterminated ``<think>``/``</think>`` tag.
    The result is a fixed point: ``strip(strip(x)) == strip(x)``.

    Args:
        text: Raw model output
        skip_strip: Return the trimmed input untouched (raw reasoning wanted)
    """
    if not text:
        return ""
    if skip_strip:
        return text.strip()

    out = text
    # Repeat until stable; removing one span can join fragments into a new one
    while True:
        cleaned = _THINK_BLOCK.sub("", out)
        cleaned = _FENCED_REASONING.sub("", cleaned)
        cleaned = _STRAY_THINK_TAG.sub("", cleaned)
        if cleaned == out:
            break
        out = cleaned
    return out.strip()
