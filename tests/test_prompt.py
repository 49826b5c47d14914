"""Tests for prompt assembly."""
from contextchat.services.prompt import (
    GLOBAL_SYSTEM,
    NORMAL_INSTRUCTION,
    THINKING_INSTRUCTION,
    PromptAssembler,
    build_rollup_prompt,
)
from contextchat.services.web import WebSource


class FakeWeb:
    """Stands in for WebAugmenter; records the requested result cap."""

    def __init__(self, sources=None, error=None, enabled=True):
        self.sources = sources or []
        self.error = error
        self.enabled = enabled
        self.calls = []

    async def search(self, query, max_results, endpoint_url=None, timeout=None):
        self.calls.append((query, max_results))
        if self.error:
            raise self.error
        return self.sources[:max_results]


def _contents(prompt):
    return [m["content"] for m in prompt.messages]


def _history(n):
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"}
        for i in range(n)
    ]


class TestPromptOrder:
    """Messages follow the fixed layering order."""

    async def test_minimal_prompt(self):
        prompt = await PromptAssembler().assemble("hello")

        assert prompt.messages[0] == {"role": "system", "content": GLOBAL_SYSTEM}
        assert prompt.messages[-2] == {"role": "system", "content": NORMAL_INSTRUCTION}
        assert prompt.messages[-1] == {"role": "user", "content": "hello"}
        assert len(prompt.messages) == 3
        assert prompt.sources == []
        assert prompt.is_thinking is False

    async def test_full_layering(self):
        web = FakeWeb([WebSource(id="S1", title="Doc", url="https://d.example", snippet="snip")])
        prompt = await PromptAssembler(web).assemble(
            "question",
            system="Be brief.",
            history=_history(2),
            persona="Likes Python\nLives in Cluj",
            workspace="Project: X",
            summary="- decided on FastAPI\n- deploy Friday",
            mode="thinking",
            use_internet=True,
        )
        contents = _contents(prompt)

        assert contents[0].startswith(GLOBAL_SYSTEM)
        assert "User profile: Likes Python Lives in Cluj" in contents[0]
        assert contents[1].startswith("Signal Hub:\n")
        assert contents[2] == "Workspace Memory:\nProject: X"
        assert contents[3].startswith("Conversation summary")
        assert contents[4] == "Be brief."
        assert contents[5:7] == ["turn 0", "turn 1"]
        assert contents[7].startswith("Focus Box:\n")
        assert contents[8].startswith("Web snippets (cite as [S#]):\n[S1] Doc - https://d.example")
        assert contents[9] == THINKING_INSTRUCTION
        assert contents[10] == "question"
        assert prompt.is_thinking is True

    async def test_signal_hub_caps(self):
        persona = "\n".join(f"fact {i}" for i in range(6))
        summary = "- s1\n- s2\n- s3"
        prompt = await PromptAssembler().assemble("q", persona=persona, summary=summary)
        hub = next(c for c in _contents(prompt) if c.startswith("Signal Hub:"))
        lines = hub.split("\n")[1:]

        assert lines == ["- fact 0", "- fact 1", "- fact 2", "- s1", "- s2"]


class TestPersonaAndWorkspace:
    """Absent memories contribute nothing."""

    async def test_no_persona_means_no_profile_or_hub(self):
        prompt = await PromptAssembler().assemble("q", persona=None, workspace="   ")
        contents = _contents(prompt)

        assert all("User profile" not in c for c in contents)
        assert all(not c.startswith("Signal Hub") for c in contents)
        assert all(not c.startswith("Workspace Memory") for c in contents)

    async def test_workspace_is_verbatim(self):
        note = "line one\n   indented line"
        prompt = await PromptAssembler().assemble("q", workspace=note)
        assert f"Workspace Memory:\n{note}" in _contents(prompt)


class TestHistoryWindow:

    async def test_regular_window_is_eight(self):
        prompt = await PromptAssembler().assemble("q", history=_history(12))
        contents = _contents(prompt)
        assert "turn 3" not in contents
        assert "turn 4" in contents
        assert "turn 11" in contents

    async def test_long_window_is_sixteen(self):
        prompt = await PromptAssembler().assemble("q", history=_history(20), long_mode=True)
        contents = _contents(prompt)
        assert "turn 3" not in contents
        assert "turn 4" in contents

    async def test_focus_box_uses_last_four(self):
        prompt = await PromptAssembler().assemble("q", history=_history(6))
        focus = next(c for c in _contents(prompt) if c.startswith("Focus Box:"))
        assert focus.split("\n")[1:] == ["- turn 2", "- turn 3", "- turn 4", "- turn 5"]

    async def test_accepts_message_rows(self):
        class Row:
            def __init__(self, role, content):
                self.role = role
                self.content = content

        prompt = await PromptAssembler().assemble("q", history=[Row("user", "hi"), Row("assistant", "hey")])
        assert {"role": "user", "content": "hi"} in prompt.messages
        assert {"role": "assistant", "content": "hey"} in prompt.messages


class TestWebAugmentation:

    async def test_no_internet_flag_no_search(self):
        web = FakeWeb([WebSource(id="S1", title="t", url="u", snippet="s")])
        prompt = await PromptAssembler(web).assemble("q", use_internet=False)
        assert web.calls == []
        assert prompt.sources == []

    async def test_disabled_backend_no_search(self):
        web = FakeWeb(enabled=False)
        prompt = await PromptAssembler(web).assemble("q", use_internet=True)
        assert web.calls == []
        assert prompt.sources == []

    async def test_search_failure_yields_no_sources(self):
        web = FakeWeb(error=RuntimeError("boom"))
        prompt = await PromptAssembler(web).assemble("q", use_internet=True)
        assert prompt.sources == []
        assert all(not c.startswith("Web snippets") for c in _contents(prompt))

    async def test_result_caps_by_mode(self):
        web = FakeWeb()
        assembler = PromptAssembler(web)
        await assembler.assemble("q", use_internet=True)
        await assembler.assemble("q", use_internet=True, mode="thinking")
        await assembler.assemble("q", use_internet=True, long_mode=True)
        assert [cap for _, cap in web.calls] == [3, 5, 8]

    async def test_notes_are_truncated(self):
        big = [
            WebSource(id=f"S{i}", title="T", url=f"https://e/{i}", snippet="x" * 3000)
            for i in range(1, 4)
        ]
        prompt = await PromptAssembler(FakeWeb(big)).assemble("q", use_internet=True)
        block = next(c for c in _contents(prompt) if c.startswith("Web snippets"))
        assert len(block) <= len("Web snippets (cite as [S#]):\n") + 4000


class TestRollupPrompt:

    def test_stitches_roles(self):
        msgs = build_rollup_prompt(
            [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
            500,
        )
        assert msgs[0]["role"] == "system"
        assert "~500 tokens" in msgs[1]["content"]
        assert msgs[1]["content"].endswith("USER: hi\nASSISTANT: hello")
