"""
Subtitle timing standards used to normalise provider output.

Limits follow common broadcast/streaming subtitle guidelines: 5/6s minimum and
7s maximum on screen, 47 characters per line, two lines, 250 WPM reading speed
(180 for youth content).
"""

import logging
import math
import re
from dataclasses import dataclass, replace
from typing import List, NamedTuple, Tuple

from localizer.schemas.segments import SubtitleQuality

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubtitleStandards:
    min_duration: float = 5 / 6
    max_duration: float = 7.0
    max_chars_per_line: int = 47
    max_lines: int = 2
    min_gap: float = 2 / 24
    max_reading_speed: int = 250
    frame_rate: int = 24


STUDIO_STANDARDS = SubtitleStandards()
YOUTH_STANDARDS = replace(STUDIO_STANDARDS, max_reading_speed=180)

# Relative trust in each provider's raw output; unknown providers get DEFAULT_RELIABILITY.
MODEL_RELIABILITY = {
    'openai-whisper': 1.0,
    'local-whisper': 0.95,
    'google-speech': 0.95,
    'elevenlabs-stt': 0.90,
    'gemini-2.5-pro': 0.85,
    'fallback-service': 0.85,
}
DEFAULT_RELIABILITY = 0.8

_SENTENCE_RE = re.compile(r'(?<=[.!?।])\s+')
_CLAUSE_RE = re.compile(r'(?<=[.!?।,;:])\s+')


class TimedText(NamedTuple):
    text: str
    start: float
    end: float


def reading_speed(text: str, duration: float) -> int:
    """Words per minute needed to read ``text`` in ``duration`` seconds."""
    words = text.split()
    if not words:
        return 0
    minutes = max(duration, 1e-3) / 60
    return round(len(words) / minutes)


def break_lines(text: str, standards: SubtitleStandards = STUDIO_STANDARDS) -> Tuple[List[str], int]:
    lines: List[str] = []
    current = ''
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= standards.max_chars_per_line:
            current = candidate
            continue
        if current:
            lines.append(current)
            current = word
        else:
            # single word longer than a line
            lines.append(word[:standards.max_chars_per_line])
            current = word[standards.max_chars_per_line:]
    if current:
        lines.append(current)
    longest = max((len(line) for line in lines), default=0)
    return lines, longest


def validate_segment(text: str, start: float, end: float, youth: bool = False) -> SubtitleQuality:
    standards = YOUTH_STANDARDS if youth else STUDIO_STANDARDS
    duration = end - start
    lines, longest = break_lines(text, standards)
    wpm = reading_speed(text, duration)

    violations: List[str] = []
    recommendations: List[str] = []
    score = 100

    if duration < standards.min_duration:
        violations.append(f"Duration too short: {duration:.2f}s (min: {standards.min_duration:.2f}s)")
        score -= 15
    if duration > standards.max_duration:
        violations.append(f"Duration too long: {duration:.2f}s (max: {standards.max_duration}s)")
        score -= 10
    if longest > standards.max_chars_per_line:
        violations.append(f"Line too long: {longest} chars (max: {standards.max_chars_per_line})")
        score -= 20
    if len(lines) > standards.max_lines:
        violations.append(f"Too many lines: {len(lines)} (max: {standards.max_lines})")
        score -= 25
    if wpm > standards.max_reading_speed:
        violations.append(f"Reading speed too fast: {wpm} WPM (max: {standards.max_reading_speed})")
        score -= 15

    if wpm > standards.max_reading_speed * 0.9:
        recommendations.append('Consider simplifying language for better readability')
    if longest > standards.max_chars_per_line * 0.9:
        recommendations.append('Consider breaking into shorter segments')
    if duration < standards.min_duration * 1.2:
        recommendations.append('Consider extending display time for better readability')

    if 150 <= wpm <= 200:
        score += 5
    if len(lines) == 1 and longest <= 40:
        score += 3

    return SubtitleQuality(
        is_compliant=not violations,
        quality_score=max(0, min(100, score)),
        reading_speed=wpm,
        line_count=len(lines),
        character_count=longest,
        violations=violations,
        recommendations=recommendations,
    )


def enhanced_confidence(raw_confidence: float, model: str, quality_score: int,
                        text_length: int, duration: float,
                        standards: SubtitleStandards = STUDIO_STANDARDS) -> float:
    """Blend provider confidence, provider reliability and subtitle quality into 0..1.

    The weights are heuristic; they give a stable ordering between segments but
    are not a calibrated probability of correctness.
    """
    confidence = raw_confidence * MODEL_RELIABILITY.get(model, DEFAULT_RELIABILITY)
    confidence = confidence * 0.7 + (quality_score / 100) * 0.3
    if standards.min_duration <= duration <= standards.max_duration:
        confidence += 0.05
    if 10 <= text_length <= standards.max_chars_per_line:
        confidence += 0.03
    if text_length < 5:
        confidence -= 0.1
    return max(0.0, min(1.0, confidence))


def text_quality_confidence(text: str, base: float = 0.7, ceiling: float = 0.95) -> float:
    """Confidence guess from transcript shape alone: longer, cleaner text scores higher."""
    if not text or not text.strip():
        return 0.1
    words = text.split()
    confidence = base
    if len(words) > 10:
        confidence += 0.1
    if len(words) > 20:
        confidence += 0.1
    # letters, digits, whitespace and any non-ASCII script count as clean
    special = len(re.findall(r"[^a-zA-Z0-9\s\u0080-\uffff]", text))
    if special / len(text) < 0.1:
        confidence += 0.05
    return min(ceiling, confidence)


def _group_units(units: List[str], pieces: int) -> List[List[str]]:
    """Split ``units`` into ``pieces`` consecutive non-empty groups of similar text length."""
    total = sum(len(u) for u in units) or 1
    cumulative = []
    running = 0
    for unit in units:
        running += len(unit)
        cumulative.append(running)

    groups = []
    start = 0
    for k in range(1, pieces):
        target = total * k / pieces
        end = start + 1
        # leave at least one unit for every remaining group
        while end < len(units) - (pieces - k) and cumulative[end - 1] < target:
            end += 1
        groups.append(units[start:end])
        start = end
    groups.append(units[start:])
    return groups


def _allocate_times(texts: List[str], start: float, end: float, max_duration: float) -> List[float]:
    total = end - start
    weights = [max(len(t), 1) for t in texts]
    weight_sum = sum(weights)
    bounds = [start]
    acc = 0
    for w in weights[:-1]:
        acc += w
        bounds.append(start + total * acc / weight_sum)
    bounds.append(end)

    if any(b - a > max_duration + 1e-9 for a, b in zip(bounds, bounds[1:])):
        n = len(texts)
        bounds = [start + total * k / n for k in range(n)] + [end]
    return bounds


def split_long_segment(text: str, start: float, end: float,
                       max_duration: float = STUDIO_STANDARDS.max_duration) -> List[TimedText]:
    """Split a segment longer than ``max_duration`` at sentence, then clause, then word boundaries.

    Sub-segments are contiguous and together cover exactly ``[start, end)``.
    """
    text = text.strip()
    total = end - start
    if total <= max_duration:
        return [TimedText(text, start, end)]

    pieces = math.ceil(total / max_duration)
    units = None
    for splitter in (_SENTENCE_RE.split, _CLAUSE_RE.split, str.split):
        candidate = [u.strip() for u in splitter(text) if u.strip()]
        if len(candidate) >= pieces:
            units = candidate
            break
    if units is None:
        units = text.split() or [text]
        logger.warning("Segment %.2f-%.2f has too little text (%d words) to fit %.1fs pieces",
                       start, end, len(units), max_duration)
        pieces = len(units)

    texts = [' '.join(group) for group in _group_units(units, pieces)]
    bounds = _allocate_times(texts, start, end, max_duration)
    return [TimedText(t, bounds[i], bounds[i + 1]) for i, t in enumerate(texts)]
