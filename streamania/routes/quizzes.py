from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ..models import Quiz, User
from ..schemas import QuizAnswerIn, QuizAnswerOut, QuizCreate, QuizOut, SettlementOut
from ..services.quizzes import QuizService
from .deps import get_current_user, get_quiz_service, require_admin

router = APIRouter()


def _quiz_out(quiz: Optional[Quiz], viewer: Optional[User]) -> Optional[QuizOut]:
    if quiz is None:
        return None
    out = QuizOut.model_validate(quiz)
    # Viewers learn the answer only once the quiz is closed and settled.
    hidden = quiz.is_active or quiz.settled_at is None
    if hidden and not (viewer is not None and viewer.is_admin):
        out.correct_option_id = None
    return out


@router.get("/", response_model=List[QuizOut])
def list_quizzes(
    current_user: User = Depends(get_current_user),
    quizzes: QuizService = Depends(get_quiz_service),
):
    return [_quiz_out(quiz, current_user) for quiz in quizzes.list_quizzes()]


@router.post("/", response_model=QuizOut, status_code=status.HTTP_201_CREATED)
def create_quiz(
    payload: QuizCreate,
    admin: User = Depends(require_admin),
    quizzes: QuizService = Depends(get_quiz_service),
):
    quiz = quizzes.create_quiz(
        payload.question,
        payload.options,
        payload.correct_option_id,
        time_limit=payload.time_limit,
        created_by=admin.id,
    )
    return _quiz_out(quiz, admin)


@router.get("/active", response_model=Optional[QuizOut])
def get_active_quiz(
    current_user: User = Depends(get_current_user),
    quizzes: QuizService = Depends(get_quiz_service),
):
    return _quiz_out(quizzes.get_active(), current_user)


@router.post("/{quiz_id}/activate", response_model=QuizOut)
def activate_quiz(
    quiz_id: str,
    admin: User = Depends(require_admin),
    quizzes: QuizService = Depends(get_quiz_service),
):
    return _quiz_out(quizzes.set_active(quiz_id), admin)


@router.post("/{quiz_id}/deactivate", response_model=QuizOut)
def deactivate_quiz(
    quiz_id: str,
    admin: User = Depends(require_admin),
    quizzes: QuizService = Depends(get_quiz_service),
):
    return _quiz_out(quizzes.deactivate(quiz_id), admin)


@router.post("/{quiz_id}/settle", response_model=SettlementOut)
def settle_quiz(
    quiz_id: str,
    _: User = Depends(require_admin),
    quizzes: QuizService = Depends(get_quiz_service),
):
    answers = quizzes.settle_quiz(quiz_id)
    return {
        "quiz_id": quiz_id,
        "answers": len(answers),
        "winners": sum(1 for answer in answers if answer.is_correct),
        "paid_out": sum(answer.points_won or 0 for answer in answers),
    }


@router.get("/{quiz_id}/answers", response_model=List[QuizAnswerOut])
def list_answers(
    quiz_id: str,
    _: User = Depends(require_admin),
    quizzes: QuizService = Depends(get_quiz_service),
):
    return quizzes.get_quiz_answers(quiz_id)


@router.post(
    "/{quiz_id}/answers",
    response_model=QuizAnswerOut,
    status_code=status.HTTP_201_CREATED,
)
def submit_answer(
    quiz_id: str,
    payload: QuizAnswerIn,
    current_user: User = Depends(get_current_user),
    quizzes: QuizService = Depends(get_quiz_service),
):
    return quizzes.submit_answer(
        quiz_id, current_user, payload.selected_option_id, payload.bet_amount
    )
