from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import QUIZ_DEFAULT_TIME_LIMIT, QUIZ_PAYOUT_MULTIPLIER
from ..core.errors import DuplicateAnswer, NotFound, RemoteWriteFailed, ValidationFailed
from ..core.events import EventHub
from ..models import Quiz, QuizAnswer, User
from .activation import ActivationRegistry

logger = logging.getLogger(__name__)

QUIZ_TOPIC = "quiz.active"


def serialize_public_quiz(quiz: Quiz) -> Dict[str, Any]:
    # Pushed to every viewer, so the correct option stays out.
    return {
        "id": quiz.id,
        "question": quiz.question,
        "options": list(quiz.options or []),
        "time_limit": quiz.time_limit,
        "activated_at": quiz.activated_at.isoformat() if quiz.activated_at else None,
        "is_active": bool(quiz.is_active),
    }


def normalize_options(options: Iterable[Any]) -> List[Dict[str, str]]:
    normalized: List[Dict[str, str]] = []
    seen: set[str] = set()
    for index, option in enumerate(options):
        if isinstance(option, dict):
            option_id, text = option.get("id"), option.get("text")
        else:
            option_id, text = getattr(option, "id", None), getattr(option, "text", None)
        text = str(text or "").strip()
        if not text:
            raise ValidationFailed("Please fill in all answer options.")
        option_id = str(option_id).strip() if option_id not in (None, "") else str(index)
        if option_id in seen:
            raise ValidationFailed("Option ids must be unique")
        seen.add(option_id)
        normalized.append({"id": option_id, "text": text})
    if len(normalized) < 2:
        raise ValidationFailed("A quiz needs at least two options")
    return normalized


class QuizService:
    def __init__(self, db: Session, hub: Optional[EventHub] = None) -> None:
        self.db = db
        self.registry: ActivationRegistry[Quiz] = ActivationRegistry(
            db,
            Quiz,
            QUIZ_TOPIC,
            hub=hub,
            serialize=serialize_public_quiz,
            label="quiz",
        )

    def create_quiz(
        self,
        question: str,
        options: Iterable[Any],
        correct_option_id: str,
        time_limit: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> Quiz:
        question = (question or "").strip()
        if not question:
            raise ValidationFailed("Please enter a quiz question.")
        normalized = normalize_options(options)
        if str(correct_option_id) not in {option["id"] for option in normalized}:
            raise ValidationFailed("Correct option must be one of the options")
        limit = QUIZ_DEFAULT_TIME_LIMIT if time_limit is None else int(time_limit)
        if limit <= 0:
            raise ValidationFailed("Time limit must be positive")
        quiz = Quiz(
            question=question,
            options=normalized,
            correct_option_id=str(correct_option_id),
            time_limit=limit,
            created_at=datetime.utcnow(),
            created_by=created_by,
        )
        return self.registry.create(quiz)

    def list_quizzes(self) -> List[Quiz]:
        return self.registry.list_all()

    def get_quiz(self, quiz_id: str) -> Quiz:
        return self.registry.get(quiz_id)

    def get_active(self) -> Optional[Quiz]:
        return self.registry.get_active()

    def set_active(self, quiz_id: str) -> Quiz:
        quiz = self.registry.get(quiz_id)
        if quiz.settled_at is not None:
            raise ValidationFailed("This quiz has already been settled")
        previous = self.registry.get_active()
        if quiz.is_active:
            return self.registry.set_active(quiz_id)
        activated = self.registry.set_active(quiz_id, activated_at=datetime.utcnow())
        # The switch turns the previous quiz off, which closes it like deactivate.
        if previous is not None and previous.id != quiz_id:
            self.settle_quiz(previous.id)
        return activated

    def deactivate(self, quiz_id: str) -> Quiz:
        quiz = self.registry.deactivate(quiz_id)
        self.settle_quiz(quiz_id)
        return quiz

    def submit_answer(
        self,
        quiz_id: str,
        user: User,
        selected_option_id: str,
        bet_amount: int,
    ) -> QuizAnswer:
        quiz = self.registry.get(quiz_id)
        if not quiz.is_active or quiz.settled_at is not None:
            raise ValidationFailed("This quiz is not accepting answers")
        if quiz.activated_at is not None and datetime.utcnow() > quiz.activated_at + timedelta(
            seconds=quiz.time_limit or 0
        ):
            raise ValidationFailed("Time is up for this quiz")
        if str(selected_option_id) not in {option["id"] for option in quiz.options or []}:
            raise ValidationFailed("Unknown option")
        if bet_amount <= 0:
            raise ValidationFailed("Bet amount must be positive")
        existing = (
            self.db.query(QuizAnswer.id)
            .filter(QuizAnswer.quiz_id == quiz_id, QuizAnswer.user_id == user.id)
            .first()
        )
        if existing:
            raise DuplicateAnswer()

        try:
            # Debit only while the balance covers the wager, in the same statement.
            debit = self.db.execute(
                update(User)
                .where(User.id == user.id, User.wallet >= bet_amount)
                .values(wallet=User.wallet - bet_amount)
                .execution_options(synchronize_session="fetch")
            )
            if debit.rowcount == 0:
                self.db.rollback()
                raise ValidationFailed("Insufficient wallet balance")
            answer = QuizAnswer(
                quiz_id=quiz_id,
                user_id=user.id,
                username=user.username,
                selected_option_id=str(selected_option_id),
                bet_amount=bet_amount,
                submitted_at=datetime.utcnow(),
            )
            self.db.add(answer)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateAnswer() from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error submitting answer")
            raise RemoteWriteFailed("Failed to submit answer") from exc
        self.db.refresh(answer)
        return answer

    def get_quiz_answers(self, quiz_id: str) -> List[QuizAnswer]:
        self.registry.get(quiz_id)
        return (
            self.db.query(QuizAnswer)
            .filter(QuizAnswer.quiz_id == quiz_id)
            .order_by(QuizAnswer.submitted_at.asc())
            .all()
        )

    def _resolve_answers(self, quiz: Quiz, answers: List[QuizAnswer]) -> int:
        """Claim and pay each answer; one already resolved elsewhere is skipped."""
        resolved = 0
        for answer in answers:
            is_correct = answer.selected_option_id == quiz.correct_option_id
            points_won = answer.bet_amount * QUIZ_PAYOUT_MULTIPLIER if is_correct else 0
            claimed = self.db.execute(
                update(QuizAnswer)
                .where(QuizAnswer.id == answer.id, QuizAnswer.is_correct.is_(None))
                .values(is_correct=is_correct, points_won=points_won)
                .execution_options(synchronize_session="fetch")
            )
            if claimed.rowcount != 1:
                continue
            resolved += 1
            if points_won:
                self.db.execute(
                    update(User)
                    .where(User.id == answer.user_id)
                    .values(wallet=User.wallet + points_won)
                    .execution_options(synchronize_session="fetch")
                )
        return resolved

    def settle_quiz(self, quiz_id: str) -> List[QuizAnswer]:
        """Resolve every unsettled answer and credit winners. Safe to call repeatedly."""
        quiz = self.registry.get(quiz_id)
        if quiz.is_active:
            raise ValidationFailed("Deactivate the quiz before settling it")
        pending = (
            self.db.query(QuizAnswer)
            .filter(QuizAnswer.quiz_id == quiz_id, QuizAnswer.is_correct.is_(None))
            .all()
        )
        try:
            resolved = self._resolve_answers(quiz, pending)
            if quiz.settled_at is None or resolved:
                quiz.settled_at = datetime.utcnow()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error settling quiz %s", quiz_id)
            raise RemoteWriteFailed("Failed to settle quiz") from exc
        if resolved:
            logger.info("Settled quiz %s: %s answers resolved", quiz_id, resolved)
        return self.get_quiz_answers(quiz_id)
