"""
Output redaction: known secret values first, then secret-shaped tokens.

Custom patterns come from user configuration, so each one is test-run
against a small battery of hostile inputs before it is accepted. Python's
``re`` cannot be interrupted mid-match, so the probes run in a child
process that is killed if it overruns.
"""

import logging
import multiprocessing
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Pattern, Tuple, Union

from .secrets import EnvshieldError

logger = logging.getLogger(__name__)

CUSTOM_PATTERN_LABEL = "CUSTOM_PATTERN"

# Per-probe wall-clock budget for custom patterns
PROBE_BUDGET_SECONDS = 0.01
_PROBE_STARTUP_TIMEOUT = 10.0
_PROBE_IPC_GRACE = 0.25

PROBE_STRINGS = (
    "",
    "a",
    "aaaa",
    "a" * 30 + "!",
    "0" * 30 + "!",
    " " * 30 + "!",
)


class RedactMode(str, Enum):
    PLACEHOLDER = "placeholder"
    ASTERISK = "asterisk"
    PARTIAL = "partial"


class PatternRejectedError(EnvshieldError):
    """A custom redaction pattern failed to compile or ran too slowly."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Rejected redaction pattern {pattern!r}: {reason}")


@dataclass(frozen=True)
class RedactionRule:
    label: str
    pattern: Pattern[str]


@dataclass(frozen=True)
class ScrubResult:
    text: str
    redacted_count: int


BUILTIN_RULES: Tuple[RedactionRule, ...] = tuple(
    RedactionRule(label, re.compile(source))
    for label, source in (
        ("STRIPE_LIVE_KEY", r"sk_live_[a-zA-Z0-9]+"),
        ("STRIPE_TEST_KEY", r"sk_test_[a-zA-Z0-9]+"),
        ("STRIPE_PK_LIVE", r"pk_live_[a-zA-Z0-9]+"),
        ("STRIPE_PK_TEST", r"pk_test_[a-zA-Z0-9]+"),
        ("GITHUB_PAT", r"ghp_[a-zA-Z0-9]+"),
        ("GITHUB_OAUTH", r"gho_[a-zA-Z0-9]+"),
        ("GITHUB_USER", r"ghu_[a-zA-Z0-9]+"),
        ("AWS_ACCESS_KEY", r"AKIA[A-Z0-9]{16}"),
        ("OPENAI_KEY", r"sk-[a-zA-Z0-9]{48}"),
        ("JWT", r"eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+"),
    )
)


class Scrubber:
    """
    Removes secret material from text.

    ``scrub`` runs three passes in a fixed order: literal known values
    (labelled with the secret name), built-in token shapes, then custom
    patterns (all labelled CUSTOM_PATTERN). Known values are counted once
    per name; pattern matches are counted once per occurrence.
    """

    def __init__(
        self,
        mode: Union[RedactMode, str] = RedactMode.PLACEHOLDER,
        custom_patterns: Iterable[str] = (),
        probe_budget: float = PROBE_BUDGET_SECONDS,
    ):
        self.mode = RedactMode(mode)
        self._builtin_rules = BUILTIN_RULES
        self._custom_patterns: Tuple[Pattern[str], ...] = tuple(
            validate_pattern(source, probe_budget) for source in custom_patterns
        )

    def scrub(self, text: str, known_secrets: Mapping[str, str]) -> ScrubResult:
        result = text
        redacted_count = 0

        # Longest first, so a value that contains another is replaced whole
        ordered = sorted(known_secrets.items(), key=lambda item: len(item[1]), reverse=True)
        for name, value in ordered:
            if value and value in result:
                result = result.replace(value, self.redact(value, name))
                redacted_count += 1

        for rule in self._builtin_rules:
            result, count = self._substitute(rule.pattern, rule.label, result)
            redacted_count += count

        for pattern in self._custom_patterns:
            result, count = self._substitute(pattern, CUSTOM_PATTERN_LABEL, result)
            redacted_count += count

        return ScrubResult(text=result, redacted_count=redacted_count)

    def redact(self, value: str, label: str) -> str:
        """Replacement text for one matched secret, per the configured mode."""
        if self.mode is RedactMode.PLACEHOLDER:
            return f"[REDACTED:{label}]"
        if self.mode is RedactMode.PARTIAL and len(value) > 6:
            return value[:3] + "***" + value[-3:]
        return "*" * len(value)

    def _substitute(self, pattern: Pattern[str], label: str, text: str) -> Tuple[str, int]:
        count = 0

        def replace(match):
            nonlocal count
            matched = match.group(0)
            # Patterns like "x*" match the empty string everywhere
            if not matched:
                return matched
            count += 1
            return self.redact(matched, label)

        return pattern.sub(replace, text), count


def validate_pattern(source: str, budget: float = PROBE_BUDGET_SECONDS) -> Pattern[str]:
    """
    Compile a custom pattern and probe it for catastrophic backtracking.

    Raises PatternRejectedError if the pattern does not compile or any
    probe takes longer than ``budget`` seconds. This catches common
    exponential patterns such as ``(a+)+$``; it is not a proof of safety.
    """
    try:
        compiled = re.compile(source)
    except re.error as e:
        raise PatternRejectedError(source, f"invalid regex: {e}") from e

    ctx = multiprocessing.get_context()
    receiver, sender = ctx.Pipe(duplex=False)
    worker = ctx.Process(target=_probe_worker, args=(source, PROBE_STRINGS, sender), daemon=True)
    worker.start()
    sender.close()

    try:
        if not receiver.poll(_PROBE_STARTUP_TIMEOUT):
            raise PatternRejectedError(source, "probe worker did not start")
        receiver.recv()

        for probe in PROBE_STRINGS:
            if not receiver.poll(budget + _PROBE_IPC_GRACE):
                raise PatternRejectedError(
                    source, f"probe of {len(probe)} chars did not finish (possible ReDoS)"
                )
            elapsed = receiver.recv()
            if elapsed > budget:
                raise PatternRejectedError(
                    source,
                    f"probe of {len(probe)} chars took {elapsed * 1000:.1f} ms "
                    f"(limit {budget * 1000:.0f} ms)",
                )
    except EOFError as e:
        raise PatternRejectedError(source, "probe worker exited unexpectedly") from e
    finally:
        if worker.is_alive():
            worker.kill()
        worker.join()
        receiver.close()

    logger.debug("Accepted custom redaction pattern %r", source)
    return compiled


def _probe_worker(source: str, probes: Iterable[str], conn) -> None:
    """Child-process side of validate_pattern: report each probe's duration."""
    pattern = re.compile(source)
    conn.send("ready")
    for probe in probes:
        started = time.perf_counter()
        pattern.search(probe)
        conn.send(time.perf_counter() - started)
    conn.close()
