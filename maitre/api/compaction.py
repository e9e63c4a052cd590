"""Context-window management: token counting, trimming and summarisation.

Two layers:
  Layer 1: Trimming (every AGENT step, no LLM) -- keep the newest suffix of
           the log that fits the token budget, anchored on a user turn.
  Layer 2: Summary (only when something was evicted) -- condense evicted
           turns into a stable system-role prefix so repeated prompts share
           an identical, cacheable head for as long as the summary holds.

Neither layer touches the stored log; both work on derived views.
"""

from __future__ import annotations

import hashlib
import logging
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import tiktoken

from maitre.api.models import Role, Turn
from maitre.config import Settings
from maitre.errors import BudgetUnsatisfiable, ModelError

logger = logging.getLogger(__name__)

TokenCounter = Callable[[str], int]

SUMMARY_PREFIX = "Previous session summary:\n"

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer for a restaurant host assistant.
Output ONLY a short factual summary of the conversation below.
Keep exact dates, times, party sizes, names, phone numbers and
confirmation ids. Do not invent anything."""


# ------------------------------------------------------------------
# Token counters
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with chars/4 heuristic. Improves via calibrate() after each
    API response using actual input_tokens from usage data.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char (chars/4 default)
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        """Estimate token count for text content."""
        if not isinstance(text, str):
            text = str(text)
        return max(1, int(len(text) * self._ratio))

    __call__ = estimate

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


class TiktokenCounter:
    """Exact BPE token counts via tiktoken."""

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self.encoding_name = encoding_name
        self._encoding = tiktoken.get_encoding(encoding_name)

    def __call__(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))


def build_counter(settings: Settings) -> TokenCounter:
    if settings.token_counter == "tiktoken":
        return TiktokenCounter(settings.tiktoken_encoding)
    return TokenEstimator()


def count_turn(turn: Turn, counter: TokenCounter) -> int:
    """Token count of one turn; multi-part content is summed."""
    return sum(counter(part) for part in turn.text_parts())


def count_turns(turns: Sequence[Turn], counter: TokenCounter) -> int:
    return sum(count_turn(t, counter) for t in turns)


# ------------------------------------------------------------------
# Layer 1: Token budgeter
# ------------------------------------------------------------------


@dataclass
class TrimResult:
    """Outcome of trimming: the retained window and what fell off the front."""

    window: list[Turn]
    evicted: list[Turn] = field(default_factory=list)
    tokens: int = 0


class TokenBudgeter:
    """Keeps the newest contiguous suffix of turns that fits the budget.

    - the system turn (if the sequence starts with one) is always kept
    - the first retained non-system turn is a user turn
    - a single turn is never partially trimmed
    """

    def __init__(self, budget: int, counter: TokenCounter) -> None:
        if budget <= 0:
            raise ValueError("budget must be > 0")
        self.budget = budget
        self.counter = counter

    def trim(self, turns: Sequence[Turn]) -> TrimResult:
        system: Turn | None = None
        body = list(turns)
        if body and body[0].role == Role.SYSTEM:
            system = body.pop(0)

        used = count_turn(system, self.counter) if system else 0
        if used > self.budget:
            raise BudgetUnsatisfiable(
                f"system turn needs {used} tokens, budget is {self.budget}"
            )

        costs = [count_turn(t, self.counter) for t in body]
        if used + sum(costs) <= self.budget:
            window = [system, *body] if system else body
            return TrimResult(window=window, tokens=used + sum(costs))

        # Walk backwards until the next turn would overflow
        start = len(body)
        accumulated = used
        for i in range(len(body) - 1, -1, -1):
            if accumulated + costs[i] > self.budget:
                break
            accumulated += costs[i]
            start = i

        # Snap forward to a user turn so the window never opens mid-exchange
        while start < len(body) and body[start].role != Role.USER:
            accumulated -= costs[start]
            start += 1

        kept = body[start:]
        window = [system, *kept] if system else kept
        logger.debug(
            "Trimmed %d of %d turns (%d/%d tokens retained)",
            start, len(body), accumulated, self.budget,
        )
        return TrimResult(window=window, evicted=body[:start], tokens=accumulated)


# ------------------------------------------------------------------
# Layer 2: Summarisers
# ------------------------------------------------------------------


class HistorySummarizer(Protocol):
    """Condenses evicted turns into a single digest (empty if nothing evicted)."""

    async def summarize(self, thread_id: str, evicted: Sequence[Turn]) -> str: ...


def serialize_for_summary(turns: Sequence[Turn]) -> str:
    """Render user/assistant turns with text as ``role: content`` lines."""
    lines = []
    for turn in turns:
        if turn.role not in (Role.USER, Role.ASSISTANT):
            continue
        if turn.narration or turn.failed or not turn.content:
            continue
        lines.append(f"{turn.role.value}: {turn.content}")
    return "\n".join(lines)


def split_chunks(text: str, chunk_size: int) -> list[str]:
    """Split text into chunks of at most chunk_size chars, preferring line breaks."""
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > chunk_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:chunk_size])
            line = line[chunk_size:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > chunk_size:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class ChunkSummarizer:
    """Deterministic digest: first fixed-size chunk of the evicted transcript.

    Only the first chunk is kept. Long evicted histories lose everything
    past chunk_size chars; this is an accepted limitation that keeps the
    prefix byte-stable between calls.
    """

    def __init__(self, chunk_size: int = 4096) -> None:
        self.chunk_size = chunk_size

    async def summarize(self, thread_id: str, evicted: Sequence[Turn]) -> str:
        return self.digest(evicted)

    def digest(self, evicted: Sequence[Turn]) -> str:
        text = serialize_for_summary(evicted)
        if not text:
            return ""
        chunks = split_chunks(text, self.chunk_size)
        if len(chunks) > 1:
            logger.info(
                "Evicted history spans %d chunks; summary keeps the first only",
                len(chunks),
            )
        return f"{SUMMARY_PREFIX}{chunks[0]}"


class ModelSummarizer:
    """LLM-written digest, memoised per (thread, evicted content).

    The model is called at temperature 0 and the result is cached, so
    repeated calls for the same evicted history return the same text. On
    model failure the deterministic chunk digest is used instead.
    """

    MAX_CACHED = 256

    def __init__(self, invoker: Any, chunk_size: int = 4096) -> None:
        self._invoker = invoker
        self._fallback = ChunkSummarizer(chunk_size)
        self._chunk_size = chunk_size
        self._cache: OrderedDict[tuple[str, str], str] = OrderedDict()

    @staticmethod
    def _fingerprint(evicted: Sequence[Turn]) -> str:
        h = hashlib.sha256()
        for turn in evicted:
            h.update(turn.role.value.encode())
            h.update(b"\x00")
            h.update(turn.content.encode())
            h.update(b"\x01")
        return h.hexdigest()

    async def summarize(self, thread_id: str, evicted: Sequence[Turn]) -> str:
        text = serialize_for_summary(evicted)
        if not text:
            return ""

        key = (thread_id, self._fingerprint(evicted))
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        chunk = split_chunks(text, self._chunk_size)[0]
        try:
            response = await self._invoker.invoke(
                [Turn.system(SUMMARY_SYSTEM_PROMPT), Turn.user(chunk)],
                tools=None,
                temperature=0.0,
            )
            summary = response.turn.content.strip()
            if not summary:
                raise ValueError("empty summary")
            summary = f"{SUMMARY_PREFIX}{summary}"
        except (ModelError, ValueError) as e:
            logger.warning("Summary generation failed for %s: %s - using chunk digest", thread_id, e)
            summary = self._fallback.digest(evicted)

        self._cache[key] = summary
        while len(self._cache) > self.MAX_CACHED:
            self._cache.popitem(last=False)
        return summary
