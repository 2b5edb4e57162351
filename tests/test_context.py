"""Tests for forge/api/context.py -- trimming, truncation and recovery.

Tests cover:
- Exchange-boundary trimming under a byte budget
- tool_use / tool_result pairing across many budgets
- Oversized block truncation (threshold, marker, UTF-8 safety)
- Conversation recovery after a failed model call
"""

from forge.api.context import (
    MIN_KEPT_BYTES,
    TRUNCATION_MARKER,
    conversation_bytes,
    exchange_boundaries,
    recover_conversation,
    trim_conversation,
    truncate_oversized_blocks,
)
from forge.api.models import Message, Role, TextBlock, ToolResultBlock, ToolUseBlock


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_text(text: str) -> Message:
    return Message(role=Role.USER, content=[TextBlock(text=text)])


def _assistant_text(text: str) -> Message:
    return Message(role=Role.ASSISTANT, content=[TextBlock(text=text)])


def _assistant_tool_use(tool_id: str = "t1") -> Message:
    return Message(
        role=Role.ASSISTANT,
        content=[ToolUseBlock(id=tool_id, name="bash", input={"command": "ls"})],
    )


def _user_tool_result(content: str, tool_id: str = "t1") -> Message:
    return Message(role=Role.USER, content=[ToolResultBlock(tool_use_id=tool_id, content=content)])


def _first_text(message: Message) -> str:
    block = message.content[0]
    assert isinstance(block, TextBlock)
    return block.text


def _assert_pairing_intact(conversation: list[Message]) -> None:
    """Every tool_result answers a tool_use in the message right before it."""
    for i, message in enumerate(conversation):
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                assert i > 0, "conversation starts with a tool_result"
                previous = conversation[i - 1]
                assert previous.role == Role.ASSISTANT
                assert block.tool_use_id in {b.id for b in previous.tool_uses()}


# ---------------------------------------------------------------------------
# Trimming
# ---------------------------------------------------------------------------


class TestTrimConversation:
    """Structural trimming at exchange boundaries."""

    def test_no_op_when_under_budget(self):
        """A conversation within budget is untouched."""
        conv = [_user_text("hello"), _assistant_text("hi")]
        result = trim_conversation(conv, 100_000)
        assert len(conv) == 2
        assert not result.changed

    def test_removes_oldest_exchange(self):
        """Budget for two exchanges drops the first of three."""
        conv = [
            _user_text("first question"),
            _assistant_text("first answer"),
            _user_text("second question"),
            _assistant_text("second answer"),
            _user_text("third question"),
            _assistant_text("third answer"),
        ]
        budget = conversation_bytes(conv[2:])
        result = trim_conversation(conv, budget)
        assert len(conv) == 4
        assert _first_text(conv[0]) == "second question"
        assert result.dropped_messages == 2

    def test_preserves_tool_use_pairing(self):
        """Dropping a tool exchange removes its tool_use and tool_result together."""
        conv = [
            _user_text("read the file"),
            _assistant_tool_use(),
            _user_tool_result("file contents here"),
            _assistant_text("I see the file"),
            _user_text("thanks"),
            _assistant_text("you're welcome"),
        ]
        trim_conversation(conv, conversation_bytes(conv[4:]))
        assert len(conv) == 2
        assert _first_text(conv[0]) == "thanks"

    def test_never_splits_tool_exchange(self):
        """The cut lands on the user text, keeping the later tool pair intact."""
        conv = [
            _user_text("q1"),
            _assistant_tool_use(),
            _user_tool_result("result1"),
            _assistant_text("a1"),
            _user_text("q2"),
            _assistant_tool_use(),
            _user_tool_result("result2"),
            _assistant_text("a2"),
        ]
        trim_conversation(conv, conversation_bytes(conv[4:]))
        assert len(conv) == 4
        assert _first_text(conv[0]) == "q2"
        assert isinstance(conv[1].content[0], ToolUseBlock)
        assert isinstance(conv[2].content[0], ToolResultBlock)

    def test_single_exchange_untouched(self):
        """One exchange cannot be trimmed structurally; small blocks are not truncated."""
        conv = [_user_text("x" * 10_000), _assistant_text("y" * 10_000)]
        trim_conversation(conv, 100)
        assert len(conv) == 2
        assert _first_text(conv[0]) == "x" * 10_000

    def test_large_tool_result_triggers_trim(self):
        """A huge tool result in an old exchange gets that exchange dropped."""
        conv = [
            _user_text("old question"),
            _assistant_text("old answer"),
            _user_text("read big file"),
            _assistant_tool_use(),
            _user_tool_result("x" * 500_000),
            _assistant_text("that's a big file"),
            _user_text("now what"),
            _assistant_text("let me help"),
        ]
        trim_conversation(conv, conversation_bytes(conv[2:]))
        assert len(conv) < 8
        assert conv[0].is_exchange_start()
        _assert_pairing_intact(conv)

    def test_fallback_to_last_exchange_when_everything_huge(self):
        """When no prefix cut fits, only the newest exchange is kept."""
        huge = "x" * 400_000
        conv = [
            _user_text(huge),
            _assistant_text(huge),
            _user_text("small"),
            _assistant_text("small"),
        ]
        trim_conversation(conv, 1000)
        assert len(conv) == 2
        assert _first_text(conv[0]) == "small"

    def test_last_exchange_fallback_then_truncates(self):
        """Keeping only the newest exchange still truncates it if it is too big."""
        conv = [
            _user_text("old"),
            _assistant_text("old answer"),
            _user_text("new"),
            _assistant_tool_use(),
            _user_tool_result("z" * 300_000),
            _assistant_text("done"),
        ]
        result = trim_conversation(conv, 50_000)
        assert result.dropped_messages == 2
        assert result.truncated_blocks == 1
        assert len(conv) == 4
        assert conv[2].content[0].content.endswith(TRUNCATION_MARKER)

    def test_empty_conversation(self):
        """Trimming an empty conversation is a no-op."""
        conv: list[Message] = []
        trim_conversation(conv, 100)
        assert conv == []

    def test_all_tool_result_exchanges_fall_through(self):
        """With no boundary after index 0, nothing is dropped."""
        conv = [
            _user_text("initial question"),
            _assistant_tool_use("t1"),
            _user_tool_result("result 1", "t1"),
            _assistant_tool_use("t2"),
            _user_tool_result("result 2", "t2"),
            _assistant_text("done"),
        ]
        trim_conversation(conv, conversation_bytes(conv[:2]))
        assert len(conv) == 6
        _assert_pairing_intact(conv)

    def test_truncates_oversized_single_exchange(self):
        """A single exchange over budget keeps all messages but shortens the big block."""
        huge = "x" * 800_000
        conv = [
            _user_text("read the big file"),
            _assistant_tool_use(),
            _user_tool_result(huge),
            _assistant_text("got it"),
        ]
        result = trim_conversation(conv, 100_000)
        assert len(conv) == 4
        assert result.truncated_blocks == 1
        content = conv[2].content[0].content
        assert len(content) < len(huge)
        assert "truncated to fit context window" in content

    def test_pairing_holds_for_any_budget(self):
        """Across a sweep of budgets, trimming never orphans a tool_result."""
        template = []
        for n in range(6):
            template.append(_user_text(f"question {n} " + "q" * (n * 700)))
            if n % 2 == 0:
                template.append(_assistant_tool_use(f"t{n}"))
                template.append(_user_tool_result("r" * (n * 1500 + 10), f"t{n}"))
            template.append(_assistant_text(f"answer {n}"))
        full = conversation_bytes(template)

        for budget in range(200, full + 200, max(full // 40, 1)):
            conv = [Message.from_wire(m.to_wire()) for m in template]
            trim_conversation(conv, budget)
            assert conv, f"budget {budget} emptied the conversation"
            assert conv[0].is_exchange_start(), f"budget {budget} left a non-boundary first message"
            _assert_pairing_intact(conv)

    def test_exchange_boundaries(self):
        """Only user messages that start with text are boundaries."""
        conv = [
            _user_text("a"),
            _assistant_tool_use(),
            _user_tool_result("r"),
            _assistant_text("b"),
            _user_text("c"),
        ]
        assert exchange_boundaries(conv) == [0, 4]


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


class TestTruncateOversizedBlocks:
    """Content truncation fallback."""

    def test_skips_small_blocks(self):
        """Blocks at or under the threshold are never truncated."""
        conv = [
            _user_text("small text that should not be truncated"),
            _assistant_text("y" * 5_000),
        ]
        assert truncate_oversized_blocks(conv, 100) == 0
        assert _first_text(conv[0]) == "small text that should not be truncated"
        assert _first_text(conv[1]) == "y" * 5_000

    def test_keeps_minimum_and_appends_marker(self):
        """A tiny budget still keeps the minimum prefix plus the marker."""
        conv = [_user_text("a" * 50_000)]
        truncate_oversized_blocks(conv, 10)
        text = _first_text(conv[0])
        assert text == "a" * MIN_KEPT_BYTES + TRUNCATION_MARKER

    def test_only_removes_the_shortfall(self):
        """A block gives up only what is over budget."""
        conv = [_user_text("b" * 20_000)]
        over = 5_000
        truncate_oversized_blocks(conv, conversation_bytes(conv) - over)
        text = _first_text(conv[0])
        assert text.startswith("b" * (20_000 - over))
        assert text == "b" * (20_000 - over) + TRUNCATION_MARKER

    def test_stops_once_deficit_covered(self):
        """Later eligible blocks are left alone once the budget is met."""
        conv = [
            _user_text("c" * 30_000),
            _assistant_text("d" * 30_000),
        ]
        truncate_oversized_blocks(conv, conversation_bytes(conv) - 1_000)
        assert _first_text(conv[0]).endswith(TRUNCATION_MARKER)
        assert _first_text(conv[1]) == "d" * 30_000

    def test_tool_use_blocks_not_touched(self):
        """Only text and tool_result blocks are eligible."""
        big_input = {"command": "e" * 20_000}
        conv = [
            Message(role=Role.ASSISTANT, content=[ToolUseBlock(id="t1", name="bash", input=big_input)]),
        ]
        assert truncate_oversized_blocks(conv, 100) == 0
        assert conv[0].content[0].input == big_input

    def test_multibyte_char_boundary(self):
        """Cutting through 2-byte characters yields valid text ending in the marker."""
        conv = [_user_text("é" * 6_000)]
        truncate_oversized_blocks(conv, 100)
        text = _first_text(conv[0])
        assert text.endswith(TRUNCATION_MARKER)
        body = text[: -len(TRUNCATION_MARKER)]
        assert set(body) == {"é"}
        body.encode("utf-8").decode("utf-8")

    def test_multibyte_odd_budgets(self):
        """Every offset into 3- and 4-byte characters snaps to a boundary."""
        for budget_delta in range(1, 8):
            for char in ("€", "😀"):
                conv = [_user_text(char * 5_000)]
                truncate_oversized_blocks(conv, conversation_bytes(conv) - 9_000 - budget_delta)
                body = _first_text(conv[0])[: -len(TRUNCATION_MARKER)]
                assert set(body) == {char}


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class TestRecoverConversation:
    """Restoring a sendable conversation after a failed call."""

    def test_pops_dangling_user_text(self):
        """A failed first call removes only the new user text."""
        conv = [
            _user_text("first question"),
            _assistant_text("first answer"),
            _user_text("second question"),
        ]
        assert recover_conversation(conv) == 1
        assert len(conv) == 2
        assert conv[-1].role == Role.ASSISTANT

    def test_pops_tool_results_and_orphaned_tool_use(self):
        """A failure mid tool loop removes the results and the calls they answer."""
        conv = [
            _user_text("do something"),
            _assistant_tool_use(),
            _user_tool_result("tool output"),
        ]
        assert recover_conversation(conv) == 2
        assert len(conv) == 1
        assert _first_text(conv[0]) == "do something"

    def test_noop_when_last_is_assistant(self):
        """A conversation ending in an assistant message is already valid."""
        conv = [_user_text("hello"), _assistant_text("hi")]
        assert recover_conversation(conv) == 0
        assert len(conv) == 2

    def test_empty_conversation(self):
        """Recovering an empty conversation does nothing."""
        conv: list[Message] = []
        assert recover_conversation(conv) == 0
        assert conv == []
