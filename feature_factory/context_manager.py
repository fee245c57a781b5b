"""
Context window management for agent conversations.

Two independent layers keep an agent's conversation inside the model's
context window:

- Layer 1 truncates individual tool outputs with a policy per tool class
  (shell output keeps head and tail lines, file reads keep a head and tail
  of characters, searches keep the first matches, globs cap the path count).
- Layer 2 compacts the whole history once an estimated token count crosses
  a threshold: the first message is kept with a summary appended, the most
  recent turn pairs are kept verbatim and everything between is discarded.

Both layers are pure and idempotent: applying them twice with the same
limits gives the same result as applying them once.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from feature_factory.config import ContextConfig

# Room reserved for the marker inserted by middle truncation
_MIDDLE_MARKER_RESERVE = 60
# Room reserved for the marker appended by search truncation
_GREP_MARKER_RESERVE = 80

_SIMPLE_MARKER = "\n\n[TRUNCATED]"
_MARKER_PREFIX = "[TRUNCATED"

_TEST_RESULT_PATTERN = re.compile(r"\b\d+\s+(?:passed|failed)\b", re.IGNORECASE)
_FILE_PATH_PATTERN = re.compile(r"(?<![\w/.])(?:\.{0,2}/)?(?:[\w.-]+/)+[\w.-]+\.[A-Za-z0-9]+\b")
_PATH_INPUT_KEYS = ("file_path", "path", "notebook_path")


@dataclass
class Message:
    """
    One conversation message.

    ``content`` is either plain text or a list of content blocks. Blocks are
    dicts with a ``type`` of ``text``, ``tool_use`` (``name``, ``input``) or
    ``tool_result`` (``content``).
    """
    role: str
    content: Union[str, list[dict[str, Any]]]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create from dictionary."""
        return cls(role=data["role"], content=data["content"])


@dataclass(frozen=True)
class TruncationResult:
    """Result of truncating one tool output."""
    output: str
    was_truncated: bool
    original_length: int
    truncated_length: int


@dataclass
class CompactionResult:
    """Result of compacting a conversation history. Never persisted."""
    messages: list[Message]
    turn_pairs_removed: int = 0
    summary: str = ""


# =============================================================================
# Layer 1: Tool Output Truncation
# =============================================================================


def truncate_tool_output(
    tool_name: str,
    output: str,
    config: Optional[ContextConfig] = None,
) -> TruncationResult:
    """
    Truncate tool output using the policy for its tool class.

    - Bash: head/tail line split, errors at the top and summaries at the bottom
    - Read: middle truncation keeping the start and end of the file
    - Grep: first matches within the character and match caps
    - Glob: path count cap
    - Anything else: simple character cap

    Args:
        tool_name: Name of the tool that produced the output.
        output: Raw tool output.
        config: Context limits. Defaults to ContextConfig().

    Returns:
        TruncationResult; ``was_truncated`` is False when the output was
        already within its limits.
    """
    config = config or ContextConfig()
    name = tool_name.lower()

    if name == "bash":
        return _truncate_bash(output, config)
    if name == "read":
        return _truncate_middle(output, config.read_output_max_chars, len(output))
    if name == "grep":
        return _truncate_grep(output, config)
    if name == "glob":
        return _truncate_glob(output, config.glob_max_paths)
    return _truncate_simple(output, config.default_output_max_chars)


def _unchanged(output: str) -> TruncationResult:
    return TruncationResult(
        output=output,
        was_truncated=False,
        original_length=len(output),
        truncated_length=len(output),
    )


def _truncated(output: str, original_length: int) -> TruncationResult:
    return TruncationResult(
        output=output,
        was_truncated=True,
        original_length=original_length,
        truncated_length=len(output),
    )


def _truncate_bash(output: str, config: ContextConfig) -> TruncationResult:
    """Keep the first and last lines of shell output."""
    max_chars = config.bash_output_max_chars
    if len(output) <= max_chars:
        return _unchanged(output)

    lines = output.split("\n")
    head_lines = config.bash_head_lines
    tail_lines = config.bash_tail_lines

    if len(lines) <= head_lines + tail_lines:
        # Few but very long lines
        return _truncate_middle(output, max_chars, len(output))

    head = "\n".join(lines[:head_lines])
    tail = "\n".join(lines[-tail_lines:])
    omitted = len(lines) - head_lines - tail_lines
    truncated = f"{head}\n\n[TRUNCATED: {omitted} lines omitted]\n\n{tail}"

    if len(truncated) > max_chars:
        result = _truncate_middle(truncated, max_chars, len(truncated))
        return _truncated(result.output, len(output))

    return _truncated(truncated, len(output))


def _truncate_middle(output: str, max_chars: int, original_length: int) -> TruncationResult:
    """Keep a prefix and a suffix of the character budget."""
    if len(output) <= max_chars:
        return TruncationResult(
            output=output,
            was_truncated=False,
            original_length=original_length,
            truncated_length=len(output),
        )

    half = (max_chars - _MIDDLE_MARKER_RESERVE) // 2
    head = output[:half]
    tail = output[-half:]
    omitted = len(output) - half * 2
    truncated = f"{head}\n\n[TRUNCATED: {omitted} characters omitted]\n\n{tail}"
    return _truncated(truncated, original_length)


def _is_marker(line: str) -> bool:
    return line.startswith(_MARKER_PREFIX)


def _truncate_grep(output: str, config: ContextConfig) -> TruncationResult:
    """Keep the first matches within both the character and match caps."""
    max_chars = config.grep_output_max_chars
    max_matches = config.grep_max_matches

    lines = output.split("\n")
    matches = [line for line in lines if line.strip() and not _is_marker(line)]

    if len(output) <= max_chars and len(matches) <= max_matches:
        return _unchanged(output)

    kept_lines: list[str] = []
    kept_matches = 0
    char_count = 0
    for line in lines:
        if not line.strip() or _is_marker(line):
            continue
        if kept_matches >= max_matches:
            break
        if char_count + len(line) + 1 > max_chars - _GREP_MARKER_RESERVE:
            break
        kept_lines.append(line)
        kept_matches += 1
        char_count += len(line) + 1

    omitted = len(matches) - kept_matches
    kept = "\n".join(kept_lines)
    truncated = f"{kept}\n\n[TRUNCATED: {omitted} more matches]"
    return _truncated(truncated, len(output))


def _truncate_glob(output: str, max_paths: int) -> TruncationResult:
    """Cap the number of returned paths."""
    paths = [line for line in output.split("\n") if line.strip() and not _is_marker(line)]
    if len(paths) <= max_paths:
        return _unchanged(output)

    kept = "\n".join(paths[:max_paths])
    omitted = len(paths) - max_paths
    truncated = f"{kept}\n\n[TRUNCATED: {omitted} more paths]"
    return _truncated(truncated, len(output))


def _truncate_simple(output: str, max_chars: int) -> TruncationResult:
    """Cap the character count, marker included."""
    if len(output) <= max_chars:
        return _unchanged(output)

    truncated = output[: max_chars - len(_SIMPLE_MARKER)] + _SIMPLE_MARKER
    return _truncated(truncated, len(output))


# =============================================================================
# Layer 2: Conversation History Compaction
# =============================================================================


def _block_text(block: dict[str, Any]) -> str:
    """Flatten a content block into text for estimation and scanning."""
    block_type = block.get("type")
    if block_type == "text":
        return str(block.get("text", ""))
    if block_type == "tool_use":
        return f"{block.get('name', '')} {json.dumps(block.get('input', {}), default=str)}"
    if block_type == "tool_result":
        return _result_text(block.get("content", ""))
    return json.dumps(block, default=str)


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(part.get("text", "")) if isinstance(part, dict) else str(part)
            for part in content
        )
    return str(content)


def _message_text(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    return "\n".join(_block_text(block) for block in message.content)


def estimate_tokens(messages: list[Message]) -> int:
    """
    Estimate the token count of a history.

    Character based (four characters per token), so treat the compaction
    threshold as tunable rather than exact.
    """
    return sum(len(_message_text(message)) for message in messages) // 4


def should_compact(estimated_tokens: int, config: Optional[ContextConfig] = None) -> bool:
    """Whether a history of this size should be compacted."""
    config = config or ContextConfig()
    return estimated_tokens >= config.compaction_threshold_tokens


def compact_messages(
    messages: list[Message],
    config: Optional[ContextConfig] = None,
) -> CompactionResult:
    """
    Compact a conversation by evicting the middle turns.

    The first message (the original task statement) is kept verbatim with a
    summary of the evicted turns appended to it. The most recent
    ``keep_recent_turn_pairs`` pairs are kept unchanged. If keeping exactly
    that window would place two messages of the same role next to each
    other, one more message is retained so the roles still alternate.

    Args:
        messages: Full ordered history.
        config: Context limits. Defaults to ContextConfig().

    Returns:
        CompactionResult. Histories no longer than the retention window are
        returned unchanged with ``turn_pairs_removed == 0``.
    """
    config = config or ContextConfig()
    keep_recent = config.keep_recent_turn_pairs * 2
    count = len(messages)

    if count <= keep_recent + 1:
        return CompactionResult(messages=list(messages))

    start = count - keep_recent
    first_role = messages[0].role
    while start > 1 and messages[start].role == first_role:
        start -= 1
    if start <= 1:
        return CompactionResult(messages=list(messages))

    evicted = messages[1:start]
    summary = _build_summary(evicted, last_turn=start)

    initial = _append_to_content(messages[0], summary)
    return CompactionResult(
        messages=[initial] + list(messages[start:]),
        turn_pairs_removed=len(evicted) // 2,
        summary=summary,
    )


def _build_summary(evicted: list[Message], last_turn: int) -> str:
    """Summarize evicted turns. Turn 1 is the initial message."""
    test_status = ""
    files: list[str] = []
    tools: list[str] = []

    for message in evicted:
        if isinstance(message.content, str):
            test_status = _last_test_line(message.content) or test_status
            _extend_unique(files, _FILE_PATH_PATTERN.findall(message.content))
            continue

        for block in message.content:
            block_type = block.get("type")
            if block_type == "tool_use":
                name = block.get("name")
                if name:
                    _extend_unique(tools, [str(name)])
                tool_input = block.get("input") or {}
                if isinstance(tool_input, dict):
                    _extend_unique(
                        files,
                        [str(tool_input[key]) for key in _PATH_INPUT_KEYS if tool_input.get(key)],
                    )
            elif block_type == "tool_result":
                text = _result_text(block.get("content", ""))
                test_status = _last_test_line(text) or test_status
                _extend_unique(files, _FILE_PATH_PATTERN.findall(text))
            elif block_type == "text":
                text = str(block.get("text", ""))
                test_status = _last_test_line(text) or test_status

    lines = [f"[CONTEXT COMPACTED - turns 2-{last_turn} summarized]"]
    if test_status:
        lines.append(f"Test results: {test_status}")
    if files:
        lines.append(f"Files touched: {', '.join(files)}")
    if tools:
        lines.append(f"Tools used: {', '.join(tools)}")
    return "\n\n" + "\n".join(lines)


def _last_test_line(text: str) -> str:
    """Return the last line of text that reports test counts."""
    found = ""
    for line in text.splitlines():
        if _TEST_RESULT_PATTERN.search(line):
            found = line.strip()
    return found


def _extend_unique(items: list[str], new_items: list[str]) -> None:
    for item in new_items:
        if item not in items:
            items.append(item)


def _append_to_content(message: Message, text: str) -> Message:
    """Append text to a message, handling both string and block content."""
    if isinstance(message.content, str):
        return Message(role=message.role, content=message.content + text)

    blocks = [dict(block) for block in message.content]
    for index in range(len(blocks) - 1, -1, -1):
        if blocks[index].get("type") == "text":
            blocks[index]["text"] = str(blocks[index].get("text", "")) + text
            break
    else:
        blocks.append({"type": "text", "text": text})
    return Message(role=message.role, content=blocks)


# Default message history container
@dataclass
class ConversationHistory:
    """
    Ordered message list with compaction applied on demand.

    Used by the orchestrator to carry context between phases of one run.
    """
    messages: list[Message] = field(default_factory=list)

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def extend(self, messages: list[Message]) -> None:
        self.messages.extend(messages)

    def estimated_tokens(self) -> int:
        return estimate_tokens(self.messages)

    def compact_if_needed(self, config: ContextConfig) -> Optional[CompactionResult]:
        """Compact in place when over threshold; returns the result or None."""
        if not should_compact(self.estimated_tokens(), config):
            return None
        result = compact_messages(self.messages, config)
        self.messages = result.messages
        return result
