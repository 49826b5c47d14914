"""Prompt assembly from layered memory sources.

Build order (each layer only when its source is non-empty):
1. global system line (+ one-line persona tag)
2. Signal Hub digest (persona lines + summary fragments)
3. workspace memory
4. conversation summary (latest rollup)
5. caller-supplied system override
6. recent history window
7. Focus Box (last few turns)
8. web snippets
9. mode instruction
10. the user's message
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from contextchat.services.text import bullets, normalize
from contextchat.services.web import WebAugmenter, WebSource

logger = logging.getLogger(__name__)

GLOBAL_SYSTEM = (
    "You are a concise, actionable and accurate assistant. "
    "Do not reveal internal notes or chain-of-thought."
)

WINDOW_TURNS = 8
WINDOW_TURNS_LONG = 16
FOCUS_TURNS = 4
BULLET_CAP = 5
PERSONA_BULLETS = 3
SUMMARY_BULLETS = 2

WEB_RESULTS = 3
WEB_RESULTS_THINKING = 5
WEB_RESULTS_LONG = 8
WEB_NOTES_CHARS = 4000
WEB_NOTES_CHARS_LONG = 8000

THINKING_INSTRUCTION = (
    "Reasoning mode: open your response with a <think> block containing your "
    "step-by-step reasoning, close it with </think>, then write only the final answer."
)
NORMAL_INSTRUCTION = (
    "Answer directly. If you need to reason first, wrap that reasoning in "
    "<think></think> tags; otherwise add no extra formatting."
)

# Summary bullets come back as "- a\n• b"; split on newlines, bullets and hyphens
_SUMMARY_SPLIT = re.compile(r"[\n•\-]+")

Msg = Dict[str, str]


@dataclass
class AssembledPrompt:
    messages: List[Msg]
    sources: List[WebSource] = field(default_factory=list)
    is_thinking: bool = False


def _system(content: str) -> Msg:
    return {"role": "system", "content": content}


def _field(message: Any, name: str) -> str:
    if isinstance(message, dict):
        return str(message.get(name) or "")
    return str(getattr(message, name, "") or "")


class PromptAssembler:
    """
    Builds the ordered message list sent to the model.

    Web augmentation goes through the injected WebAugmenter; its failures
    are treated as zero sources.
    """

    def __init__(self, web: Optional[WebAugmenter] = None, global_system: str = GLOBAL_SYSTEM):
        self.web = web
        self.global_system = global_system

    async def assemble(
        self,
        message: str,
        *,
        system: Optional[str] = None,
        history: Sequence[Any] = (),
        persona: Optional[str] = None,
        workspace: Optional[str] = None,
        summary: Optional[str] = None,
        mode: str = "normal",
        use_internet: bool = False,
        long_mode: bool = False,
    ) -> AssembledPrompt:
        """
        Assemble the prompt for one user message.

        Args:
            message: The user's message (always the final entry)
            system: Explicit system override
            history: Prior turns, oldest first (dicts or Message rows)
            persona: Persona memory, already filtered by the caller's toggle
            workspace: Workspace note, already filtered by the caller's toggle
            summary: Latest rollup text for the active bucket
            mode: "normal" or "thinking"
            use_internet: Fetch web snippets when a backend is configured
            long_mode: Widen the history window and web budget

        Returns:
            AssembledPrompt with messages, sources actually used, is_thinking
        """
        is_thinking = mode == "thinking"
        persona_text = (persona or "").strip()
        summary_text = (summary or "").strip()
        turns = [
            {"role": _field(m, "role"), "content": _field(m, "content")}
            for m in history
        ]

        msgs: List[Msg] = []

        prelude = [self.global_system]
        if persona_text:
            prelude.append(f"User profile: {normalize(persona_text)}")
        msgs.append(_system(normalize(" ".join(prelude))))

        signal = self._signal_bullets(persona_text, summary_text)
        if signal:
            msgs.append(_system(f"Signal Hub:\n{bullets(signal, BULLET_CAP)}"))

        if workspace and workspace.strip():
            msgs.append(_system(f"Workspace Memory:\n{workspace}"))

        if summary_text:
            msgs.append(_system(
                f"Conversation summary (older context, concise):\n{summary_text}\n\n"
                "Use this to stay consistent. Do not restate it verbatim."
            ))

        if system and system.strip():
            msgs.append(_system(normalize(system)))

        window = WINDOW_TURNS_LONG if long_mode else WINDOW_TURNS
        msgs.extend(turns[-window:])

        focus = [normalize(t["content"]) for t in turns[-FOCUS_TURNS:]]
        focus = [f for f in focus if f]
        if focus:
            msgs.append(_system(f"Focus Box:\n{bullets(focus, BULLET_CAP)}"))

        sources: List[WebSource] = []
        if use_internet and self.web is not None and self.web.enabled:
            sources = await self._fetch_sources(message, mode, long_mode)
            if sources:
                limit = WEB_NOTES_CHARS_LONG if long_mode else WEB_NOTES_CHARS
                notes = "\n\n".join(
                    f"[{s.id}] {s.title} - {s.url}\n{s.snippet}" for s in sources
                )[:limit]
                msgs.append(_system(f"Web snippets (cite as [S#]):\n{notes}"))

        msgs.append(_system(THINKING_INSTRUCTION if is_thinking else NORMAL_INSTRUCTION))
        msgs.append({"role": "user", "content": message})

        return AssembledPrompt(messages=msgs, sources=sources, is_thinking=is_thinking)

    @staticmethod
    def _signal_bullets(persona: str, summary: str) -> List[str]:
        signal: List[str] = []
        if persona:
            lines = [normalize(line) for line in persona.split("\n")]
            signal.extend([line for line in lines if line][:PERSONA_BULLETS])
        if summary:
            parts = [normalize(part) for part in _SUMMARY_SPLIT.split(summary)]
            signal.extend([part for part in parts if part][:SUMMARY_BULLETS])
        return signal[:BULLET_CAP]

    async def _fetch_sources(self, message: str, mode: str, long_mode: bool) -> List[WebSource]:
        if long_mode:
            cap = WEB_RESULTS_LONG
        elif mode == "thinking":
            cap = WEB_RESULTS_THINKING
        else:
            cap = WEB_RESULTS
        try:
            return await self.web.search(message, cap)
        except Exception as e:
            logger.warning(f"Web augmentation failed, continuing without sources: {e}")
            return []


def build_rollup_prompt(chunk_messages: Sequence[Any], target_tokens: int) -> List[Msg]:
    """
    Prompt that compresses a chunk of conversation into ~target_tokens.

    Args:
        chunk_messages: Messages not yet folded into a rollup, oldest first
        target_tokens: Desired summary length

    Returns:
        Two-message prompt (summarizer system instruction + stitched transcript)
    """
    intro = (
        f"Summarize the following conversation turns into ~{target_tokens} tokens. "
        "Keep it neutral, factual, and compact. Emphasize goals, decisions, facts, "
        "named entities, and important Q&A. Do NOT include chain-of-thought."
    )
    stitched = "\n".join(
        f"{_field(m, 'role').upper()}: {_field(m, 'content')}" for m in chunk_messages
    )
    return [
        _system("You are a careful AI summarizer. Output only the summary."),
        {"role": "user", "content": f"{intro}\n\n---\n{stitched}"},
    ]
