"""Answer grading: exact match after trimming and lower-casing, no partial credit."""

from __future__ import annotations

from dataclasses import dataclass

from .graph import QuestionSpec


@dataclass(frozen=True)
class GradeResult:
    is_correct: bool
    points_earned: int


def normalize_answer(value: str) -> str:
    return (value or "").strip().lower()


def grade(question: QuestionSpec, raw_answer: str) -> GradeResult:
    is_correct = normalize_answer(raw_answer) == normalize_answer(question.correct_answer)
    return GradeResult(is_correct=is_correct, points_earned=question.points if is_correct else 0)
