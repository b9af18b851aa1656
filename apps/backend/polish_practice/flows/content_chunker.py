"""長いコース教材を抽出プロンプト向けのチャンクへ分割する。

段落境界を優先して詰め、最小サイズに満たないまま溢れた場合は文単位、
それでも長ければ文字数で切る。2番目以降のチャンクには直前の末尾を
`---` 区切りで付け、文脈を引き継ぐ。
"""

from __future__ import annotations

import math
import re
from typing import Literal, Sequence

from ..models.concept import Course
from ..models.extraction import ContentChunk

KEYWORD_GROUP_SIZE = 15
OVERLAP_SEPARATOR = "\n---\n"

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"[.!?]+\s+")

TextKind = Literal["notes", "practice", "homework"]


def estimate_concepts(text: str) -> int:
    """75語あたり1概念を基準に、語彙の多様さで上乗せした概算。"""

    words = text.split()
    if not words:
        return 1
    diversity = len({w.lower() for w in words}) / len(words)
    base = math.ceil(len(words) / 75)
    return max(1, math.floor(base * (1 + diversity * 2)))


def _close_sentence(text: str) -> str:
    return text if text.rstrip().endswith((".", "!", "?")) else text + "."


def force_split(text: str, max_chars: int) -> list[str]:
    segments: list[str] = []
    current = ""
    for sentence in _SENTENCE_RE.split(text):
        candidate = f"{current}. {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
            continue
        if current:
            segments.append(_close_sentence(current))
        if len(sentence) > max_chars:
            segments.extend(
                sentence[i : i + max_chars] for i in range(0, len(sentence), max_chars)
            )
            current = ""
        else:
            current = sentence
    if current:
        segments.append(_close_sentence(current))
    return [s for s in segments if s.strip()]


def smart_split(text: str, max_chars: int, min_chars: int) -> list[str]:
    segments: list[str] = []
    current = ""
    for paragraph in _PARAGRAPH_RE.split(text):
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= max_chars:
            current = candidate
        elif len(current) >= min_chars:
            segments.append(current)
            if len(paragraph) > max_chars:
                segments.extend(force_split(paragraph, max_chars))
                current = ""
            else:
                current = paragraph
        else:
            segments.extend(force_split(candidate, max_chars))
            current = ""
    if current:
        segments.append(current)
    return [s for s in segments if s.strip()]


def chunk_keywords(keywords: Sequence[str]) -> list[ContentChunk]:
    ordered = sorted({k.strip() for k in keywords if k.strip()})
    chunks: list[ContentChunk] = []
    for start in range(0, len(ordered), KEYWORD_GROUP_SIZE):
        group = ordered[start : start + KEYWORD_GROUP_SIZE]
        chunks.append(
            ContentChunk(
                kind="keywords",
                content=", ".join(group),
                estimated_concepts=max(1, math.floor(len(group) * 0.8)),
            )
        )
    return chunks


def chunk_text(
    text: str,
    kind: TextKind,
    *,
    max_chars: int,
    min_chars: int,
    overlap: int,
) -> list[ContentChunk]:
    if not text.strip():
        return []
    if len(text) <= max_chars:
        return [ContentChunk(kind=kind, content=text.strip(), estimated_concepts=estimate_concepts(text))]

    segments = smart_split(text, max_chars, min_chars)
    chunks: list[ContentChunk] = []
    for index, segment in enumerate(segments):
        content = segment
        if index > 0 and overlap > 0:
            content = segments[index - 1][-overlap:] + OVERLAP_SEPARATOR + segment
        chunks.append(
            ContentChunk(
                kind=kind, content=content.strip(), estimated_concepts=estimate_concepts(segment)
            )
        )
    return chunks


def needs_chunking(course: Course, max_chars: int) -> bool:
    total = len(course.notes) + len(course.practice) + len(course.homework or "")
    return total > max_chars


def chunk_course(
    course: Course,
    *,
    max_chars: int,
    min_chars: int,
    overlap: int,
) -> list[ContentChunk]:
    """キーワード・新出語の群 → notes → practice → homework の順にチャンクを並べる。"""

    chunks = chunk_keywords([*course.keywords, *course.new_words])
    for kind, text in (
        ("notes", course.notes),
        ("practice", course.practice),
        ("homework", course.homework or ""),
    ):
        chunks.extend(
            chunk_text(text, kind, max_chars=max_chars, min_chars=min_chars, overlap=overlap)
        )
    return chunks
