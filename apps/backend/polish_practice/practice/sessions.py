"""練習セッションのライフサイクル（開始・回答・完了）。

セッション文書は開始時に active で保存し、回答のたびに上書きする。
問題が完了（正解、または3回目の試行）した時点で、問題の成績と
対象概念の SRS 進捗をまとめて更新する。
"""

from __future__ import annotations

import math
import secrets
from datetime import UTC, datetime
from typing import Sequence

from ..config import settings
from ..errors import NotFoundError, PracticeEngineError, ValidationError
from ..flows.answer_validation import AnswerValidationFlow
from ..logging import logger
from ..models.common import CompletionReason, DrillType, PracticeMode
from ..models.practice import (
    AnswerOutcome,
    AttemptsBreakdown,
    ConceptProgressSnapshot,
    SessionAnalysis,
    SessionProgress,
    SessionStart,
    SessionSummary,
    ValidationDetails,
)
from ..models.question import PENDING_CORRECT_ANSWER, QuestionBankItem
from ..models.session import MAX_ATTEMPTS, PracticeSession, QuestionResponse, SessionMetrics
from ..store.firestore_store import AppFirestoreStore
from .engine import ConceptPracticeEngine

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
FALLBACK_RATIONALE_SUFFIX = " (Used fallback strategy to ensure questions are available)"
SHORT_SESSION_QUESTIONS = 5


def new_session_id(now: datetime | None = None) -> str:
    """`session_<epoch ms>_<base36 9文字>` 形式のセッション ID。"""

    current = now or datetime.now(UTC)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"session_{int(current.timestamp() * 1000)}_{suffix}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _no_concepts_suggestions(drill_type: DrillType) -> list[str]:
    if drill_type is DrillType.course:
        return [
            "Use the concept extraction system to process this course content",
            "Ensure the course has sufficient content (notes, practice text, keywords)",
            "Check that concept extraction has been completed for this course",
            "Try a different course that has concepts extracted",
        ]
    return [
        "Practice some questions first to build performance history",
        "Try 'Normal Practice' mode to answer questions and create drill material",
        "Add courses and extract concepts to build your concept library",
        "Use the concept extraction system to process course content",
    ]


def _no_questions_error(
    mode: PracticeMode, drill_type: DrillType | None, course_id: int | None
) -> PracticeEngineError:
    if mode is PracticeMode.drill and drill_type is DrillType.course:
        return PracticeEngineError(
            f"No questions found that strictly target concepts from course {course_id}",
            suggestions=[
                "The course may have concepts but no questions targeting them specifically",
                "Create questions for these concepts",
                "Try concept extraction first, then generate questions for the concepts",
                "Switch to 'Normal Practice' mode which uses flexible question matching",
            ],
        )
    if mode is PracticeMode.drill:
        return PracticeEngineError(
            "No questions found that strictly target the selected weak concepts",
            suggestions=[
                "The selected concepts exist but have no questions targeting them specifically",
                "Create questions for weak concepts",
                "Try 'Normal Practice' mode which uses flexible question matching",
                "Add more courses and extract concepts to build question inventory",
            ],
        )
    return PracticeEngineError(
        "No concepts or questions available for practice.",
        suggestions=[
            "Add some Polish language courses",
            "Extract concepts from your courses using the concept extraction system",
            "Ensure your courses have sufficient content (notes, practice text, keywords)",
        ],
    )


def build_recommendations(analysis: SessionAnalysis) -> list[str]:
    recommendations: list[str] = []
    if analysis.completion_reason is CompletionReason.abandoned:
        recommendations.append("Consider shorter practice sessions to build consistency")
        recommendations.append("Focus on concepts you find most engaging")
    if analysis.accuracy < 50:
        recommendations.append("Review the concepts that appeared in this session")
        recommendations.append("Consider drilling weak concepts with targeted practice")
    elif analysis.accuracy > 80:
        recommendations.append("Great job! You're ready for more challenging concepts")
        recommendations.append("Consider adding new concepts to your practice rotation")
    if analysis.attempts_breakdown.failed > 0:
        recommendations.append("Review the concepts from questions you couldn't answer")
        recommendations.append("Consider creating flashcards for difficult concepts")
    if analysis.questions_attempted < SHORT_SESSION_QUESTIONS:
        recommendations.append(
            "Try to complete more questions in each session for better progress"
        )
    return recommendations


def build_next_steps(analysis: SessionAnalysis) -> list[str]:
    if analysis.completion_reason is CompletionReason.completed:
        steps = [
            "Continue with your next practice session",
            "Review any concepts you struggled with",
        ]
    else:
        steps = [
            "Try a shorter practice session next time",
            "Focus on concepts that interest you most",
        ]
    if analysis.accuracy > 70:
        steps.append("Consider adding new concepts to your practice")
        steps.append("Try a different question type for variety")
    return steps


def analyze_session(
    session: PracticeSession, total_time_spent: float | None = None
) -> SessionAnalysis:
    """完了済み回答から正答率・平均回答時間・試行別内訳を集計する。"""

    responses = session.question_responses
    completed = session.completed_responses()
    correct = sum(1 for resp in responses if resp.is_correct)
    accuracy = correct / len(completed) * 100 if completed else 0.0
    average_time = (
        sum(resp.response_time for resp in completed) / len(completed) if completed else 0.0
    )
    answered_session_question = any(
        resp.question_id in session.questions_used for resp in responses
    )
    return SessionAnalysis(
        session_id=session.session_id,
        completion_reason=session.completion_reason or CompletionReason.completed,
        duration=total_time_spent or 0.0,
        questions_attempted=len(completed),
        correct_answers=correct,
        accuracy=_round_half_up(accuracy),
        average_response_time=_round_half_up(average_time),
        concepts_reviewed=(
            len(set(session.selected_concepts)) if answered_session_question else 0
        ),
        attempts_breakdown=AttemptsBreakdown(
            first_attempt=sum(1 for r in responses if r.is_correct and r.attempts == 1),
            second_attempt=sum(1 for r in responses if r.is_correct and r.attempts == 2),
            third_attempt=sum(1 for r in responses if r.is_correct and r.attempts == 3),
            failed=sum(1 for r in responses if not r.is_correct and r.attempts >= MAX_ATTEMPTS),
        ),
    )


class PracticeSessionService:
    """Practice session lifecycle on top of the practice engine.

    - `start_session`: 概念選択 → 出題の組み立て → セッション保存
    - `submit_answer`: 採点 → 回答記録 → 完了時に成績と SRS 進捗を更新
    - `complete_session`: 集計・推奨事項・概念ごとの進捗サマリ
    """

    def __init__(
        self,
        store: AppFirestoreStore | None = None,
        *,
        engine: ConceptPracticeEngine | None = None,
        validation_flow: AnswerValidationFlow | None = None,
    ) -> None:
        if store is None:
            from ..store import get_store

            store = get_store()
        self._store = store
        self.engine = engine or ConceptPracticeEngine(store)
        self._validation_flow = validation_flow

    @property
    def validation_flow(self) -> AnswerValidationFlow:
        if self._validation_flow is None:
            self._validation_flow = AnswerValidationFlow()
        return self._validation_flow

    # --- start ---
    def _select_concepts(
        self,
        mode: PracticeMode,
        user_id: str,
        max_concepts: int,
        target_concept_ids: Sequence[str] | None,
        course_id: int | None,
        drill_type: DrillType,
        now: datetime,
    ) -> tuple[list[str], str]:
        if target_concept_ids:
            return list(target_concept_ids)[:max_concepts], "Manually selected concepts"

        if mode is PracticeMode.drill:
            if drill_type is DrillType.course:
                if course_id is None:
                    raise ValidationError(
                        "Course ID is required for course-based drilling", field="course_id"
                    )
                concept_ids = self.engine.get_drill_concepts_by_course(course_id, max_concepts)
                if not concept_ids:
                    raise PracticeEngineError(
                        f"Course {course_id} has no extracted concepts available for drilling",
                        suggestions=_no_concepts_suggestions(drill_type),
                        details={"course_id": course_id},
                    )
                return concept_ids, f"Drilling {len(concept_ids)} concepts from course {course_id}"

            # 弱点ドリルは上限なしで全候補を弱い順に使う
            concept_ids = self.engine.get_drill_concepts_by_weakness(user_id, 0)
            if not concept_ids:
                raise PracticeEngineError(
                    "No concepts available for weakness-based drilling",
                    suggestions=_no_concepts_suggestions(drill_type),
                    details={"user_id": user_id},
                )
            return (
                concept_ids,
                f"Drilling {len(concept_ids)} concepts sorted by weakness (weakest first)",
            )

        selection = self.engine.select_practice_concepts(user_id, max_concepts, now=now)
        return selection.concept_ids, selection.rationale

    def start_session(
        self,
        mode: PracticeMode | str = PracticeMode.normal,
        user_id: str | None = None,
        max_questions: int | None = None,
        max_concepts: int | None = None,
        target_concept_ids: Sequence[str] | None = None,
        course_id: int | None = None,
        drill_type: DrillType | str | None = None,
        now: datetime | None = None,
    ) -> SessionStart:
        try:
            practice_mode = PracticeMode(mode)
        except ValueError as exc:
            raise ValidationError(f"Unknown practice mode: {mode}", field="mode", value=mode) from exc
        if practice_mode is PracticeMode.previous:
            raise ValidationError(
                "Sessions can only be started in normal or drill mode", field="mode", value=mode
            )
        try:
            drill = DrillType(drill_type) if drill_type else DrillType.weakness
        except ValueError as exc:
            raise ValidationError(
                f"Unknown drill type: {drill_type}", field="drill_type", value=drill_type
            ) from exc
        if practice_mode is PracticeMode.drill and drill not in {DrillType.weakness, DrillType.course}:
            raise ValidationError(
                "Sessions support weakness or course drills", field="drill_type", value=drill.value
            )

        user = user_id or settings.default_user_id
        question_limit = max_questions or settings.practice_max_questions
        concept_limit = max_concepts or settings.practice_max_concepts
        current = now or datetime.now(UTC)
        logger.info(
            "practice_session_starting",
            mode=practice_mode.value,
            user_id=user,
            max_questions=question_limit,
            max_concepts=concept_limit,
        )

        concept_ids, rationale = self._select_concepts(
            practice_mode, user, concept_limit, target_concept_ids, course_id, drill, current
        )
        generation_started = datetime.now(UTC)
        questions = self.engine.get_questions_for_concepts(
            concept_ids, practice_mode, question_limit
        )
        if not questions:
            raise _no_questions_error(practice_mode, drill, course_id)
        if len(questions) < settings.practice_min_questions:
            raise PracticeEngineError(
                f"Only {len(questions)} question(s) available for practice. "
                f"A minimum of {settings.practice_min_questions} questions is recommended.",
                suggestions=[
                    "Add more courses with Polish content",
                    "Extract concepts from existing courses",
                    "Create more questions for your concepts",
                    "Try a different practice mode or concept selection",
                ],
                details={"questions_found": len(questions)},
            )

        selected = set(concept_ids)
        matching = [q for q in questions if selected.intersection(q.target_concepts)]
        fallback_used = practice_mode is PracticeMode.normal and len(matching) < len(questions)
        if fallback_used:
            rationale += FALLBACK_RATIONALE_SUFFIX

        generated = sum(
            1
            for q in questions
            if q.source == "generated" and q.created_date >= generation_started
        )
        session = PracticeSession(
            session_id=new_session_id(current),
            user_id=user,
            mode=practice_mode,
            selected_concepts=concept_ids,
            questions_used=[q.id for q in questions],
            started_at=current,
            session_metrics=SessionMetrics(new_questions_generated=generated),
        )
        self._store.sessions.save_session(session)
        logger.info(
            "practice_session_started",
            session_id=session.session_id,
            questions=len(questions),
            fallback_used=fallback_used,
        )
        return SessionStart(
            session_id=session.session_id,
            mode=practice_mode,
            concept_ids=concept_ids,
            questions=questions,
            rationale=rationale,
            fallback_used=fallback_used,
            questions_with_matching_concepts=len(matching),
            fallback_questions=len(questions) - len(matching),
        )

    # --- lookup ---
    def get_session(self, session_id: str, user_id: str | None = None) -> PracticeSession:
        user = user_id or settings.default_user_id
        session = self._store.sessions.get_session(session_id)
        if session is None or session.user_id != user:
            raise NotFoundError("Practice session", session_id)
        return session

    def _get_active_session(self, session_id: str, user_id: str) -> PracticeSession:
        session = self.get_session(session_id, user_id)
        if not session.is_active:
            raise NotFoundError("Practice session", session_id)
        return session

    def _get_active_question(self, question_id: str) -> QuestionBankItem:
        question = self._store.questions.get_question(question_id)
        if question is None or not question.is_active:
            raise NotFoundError("Question", question_id)
        return question

    # --- answer ---
    def submit_answer(
        self,
        session_id: str,
        question_id: str,
        user_answer: str | Sequence[str],
        response_time: float,
        attempt_number: int,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> AnswerOutcome:
        if not 1 <= attempt_number <= MAX_ATTEMPTS:
            raise ValidationError(
                f"attempt_number must be between 1 and {MAX_ATTEMPTS}",
                field="attempt_number",
                value=attempt_number,
            )
        answer_text = user_answer if isinstance(user_answer, str) else ", ".join(user_answer)
        if not answer_text.strip():
            raise ValidationError("Answer must not be empty", field="user_answer")
        if response_time < 0:
            raise ValidationError(
                "response_time must be non-negative", field="response_time", value=response_time
            )

        user = user_id or settings.default_user_id
        current = now or datetime.now(UTC)
        session = self._get_active_session(session_id, user)
        question = self._get_active_question(question_id)
        response = session.find_response(question_id)
        if response is not None and response.is_completed:
            # 完了済みの問題を再採点すると SRS 遷移が二重に適用される
            raise ValidationError(
                f"Question {question_id} is already completed in this session",
                field="question_id",
                value=question_id,
            )

        result = self.validation_flow.validate(question, user_answer, attempt_number)
        is_completed = result.is_correct or attempt_number >= MAX_ATTEMPTS

        if response is None:
            response = QuestionResponse(
                question_id=question_id,
                attempts=attempt_number,
                is_correct=result.is_correct,
                response_time=response_time,
                user_answer=answer_text,
                timestamp=current,
            )
            session.question_responses.append(response)
        else:
            response.attempts = attempt_number
            response.is_correct = result.is_correct
            response.response_time += response_time
            response.user_answer = answer_text
            response.timestamp = current
        if question_id not in session.questions_used:
            session.questions_used.append(question_id)

        if result.is_correct and question.correct_answer == PENDING_CORRECT_ANSWER:
            # 生成時に正答が未確定だった問題は、正解と判定された回答で確定させる
            self._store.questions.update_correct_answer(question_id, answer_text)

        if is_completed:
            session.refresh_metrics()
            self.engine.update_question_performance(question_id, result.is_correct)
            for concept_id in question.target_concepts:
                self.engine.srs.update_concept_progress(
                    concept_id,
                    result.is_correct,
                    response.response_time,
                    user_id=user,
                    now=current,
                )
        self._store.sessions.save_session(session)
        logger.info(
            "practice_answer_recorded",
            session_id=session_id,
            question_id=question_id,
            attempt=attempt_number,
            is_correct=result.is_correct,
            completed=is_completed,
        )

        return AnswerOutcome(
            session_id=session_id,
            question_id=question_id,
            attempt_number=attempt_number,
            is_correct=result.is_correct,
            feedback=result.feedback,
            correct_answer=(
                question.correct_answer if attempt_number >= MAX_ATTEMPTS else None
            ),
            is_question_completed=is_completed,
            attempts_remaining=0 if is_completed else MAX_ATTEMPTS - attempt_number,
            session_progress=SessionProgress(
                total_questions=len(session.questions_used),
                correct_answers=session.session_metrics.correct_answers,
                questions_completed=len(session.completed_responses()),
            ),
            validation_details=ValidationDetails(
                confidence_level=result.confidence,
                mistake_type=result.mistake_type,
                keywords=result.keywords,
            ),
        )

    # --- completion ---
    def complete_session(
        self,
        session_id: str,
        completion_reason: CompletionReason | str = CompletionReason.completed,
        user_id: str | None = None,
        total_time_spent: float | None = None,
        now: datetime | None = None,
    ) -> SessionSummary:
        try:
            reason = CompletionReason(completion_reason)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown completion reason: {completion_reason}",
                field="completion_reason",
                value=completion_reason,
            ) from exc
        if total_time_spent is not None and total_time_spent < 0:
            raise ValidationError(
                "total_time_spent must be non-negative",
                field="total_time_spent",
                value=total_time_spent,
            )

        user = user_id or settings.default_user_id
        session = self._get_active_session(session_id, user)
        session.is_active = False
        session.completed_at = now or datetime.now(UTC)
        session.completion_reason = reason
        session.refresh_metrics()
        self._store.sessions.save_session(session)

        analysis = analyze_session(session, total_time_spent)
        progress = self._store.progress.list_for_concepts(user, session.selected_concepts)
        snapshots = [
            ConceptProgressSnapshot(
                concept_id=record.concept_id,
                mastery_level=record.mastery_level,
                success_rate=record.success_rate,
                next_review=record.next_review,
                last_practiced=record.last_practiced,
                consecutive_correct=record.consecutive_correct,
                interval_days=record.interval_days,
            )
            for concept_id in dict.fromkeys(session.selected_concepts)
            if (record := progress.get(concept_id)) is not None and record.is_active
        ]
        logger.info(
            "practice_session_completed",
            session_id=session_id,
            reason=reason.value,
            questions=analysis.questions_attempted,
            accuracy=analysis.accuracy,
        )
        return SessionSummary(
            session_id=session_id,
            completion_reason=reason,
            analysis=analysis,
            recommendations=build_recommendations(analysis),
            next_steps=build_next_steps(analysis),
            concepts_with_progress=snapshots,
        )
