from datetime import datetime, timedelta

import pytest

from conftest import auth, make_user

from streamania.core.errors import DuplicateAnswer, ValidationFailed
from streamania.models import Quiz, User
from streamania.services.quizzes import QUIZ_TOPIC, QuizService

OPTIONS = [{"text": "Red"}, {"text": "Green"}, {"text": "Blue"}]


@pytest.fixture
def quizzes(db, hub):
    return QuizService(db, hub)


def _wallet(db, user_id):
    db.expire_all()
    return db.query(User).filter(User.id == user_id).one().wallet


def test_create_quiz_assigns_positional_option_ids(quizzes):
    quiz = quizzes.create_quiz("Favourite colour?", OPTIONS, "1")

    assert [option["id"] for option in quiz.options] == ["0", "1", "2"]
    assert quiz.correct_option_id == "1"
    assert quiz.time_limit == 30
    assert quiz.is_active is False


@pytest.mark.parametrize(
    "question, options, correct, message",
    [
        ("", OPTIONS, "0", "Please enter a quiz question."),
        ("Q?", [{"text": "Only"}], "0", "A quiz needs at least two options"),
        ("Q?", [{"text": "A"}, {"text": " "}], "0", "Please fill in all answer options."),
        ("Q?", OPTIONS, "7", "Correct option must be one of the options"),
    ],
)
def test_create_quiz_validation(quizzes, question, options, correct, message):
    with pytest.raises(ValidationFailed) as exc:
        quizzes.create_quiz(question, options, correct)
    assert exc.value.message == message


def test_only_one_quiz_is_active(db, hub, quizzes):
    published = []
    hub.subscribe(QUIZ_TOPIC, lambda topic, payload: published.append(payload))
    first = quizzes.create_quiz("One?", OPTIONS, "0")
    second = quizzes.create_quiz("Two?", OPTIONS, "0")

    quizzes.set_active(first.id)
    quizzes.set_active(second.id)

    active = db.query(Quiz).filter(Quiz.is_active.is_(True)).all()
    assert [quiz.id for quiz in active] == [second.id]
    assert published[-1]["active"]["id"] == second.id
    assert "correct_option_id" not in published[-1]["active"]


def test_submit_answer_debits_wager(db, quizzes):
    user = make_user(db, "alice", wallet=500)
    quiz = quizzes.create_quiz("Q?", OPTIONS, "2")
    quizzes.set_active(quiz.id)

    answer = quizzes.submit_answer(quiz.id, user, "2", 200)

    assert answer.bet_amount == 200
    assert answer.is_correct is None
    assert _wallet(db, user.id) == 300


def test_submit_answer_rules(db, quizzes):
    user = make_user(db, "bob", wallet=100)
    quiz = quizzes.create_quiz("Q?", OPTIONS, "0")

    with pytest.raises(ValidationFailed, match="not accepting answers"):
        quizzes.submit_answer(quiz.id, user, "0", 10)

    quizzes.set_active(quiz.id)
    with pytest.raises(ValidationFailed, match="Unknown option"):
        quizzes.submit_answer(quiz.id, user, "9", 10)
    with pytest.raises(ValidationFailed, match="positive"):
        quizzes.submit_answer(quiz.id, user, "0", 0)
    with pytest.raises(ValidationFailed, match="Insufficient wallet balance"):
        quizzes.submit_answer(quiz.id, user, "0", 101)
    assert _wallet(db, user.id) == 100

    quizzes.submit_answer(quiz.id, user, "0", 100)
    with pytest.raises(DuplicateAnswer):
        quizzes.submit_answer(quiz.id, user, "1", 1)
    assert _wallet(db, user.id) == 0


def test_deactivate_settles_and_pays_winners(db, quizzes):
    winner = make_user(db, "win", wallet=1000)
    loser = make_user(db, "lose", wallet=1000)
    quiz = quizzes.create_quiz("Q?", OPTIONS, "1")
    quizzes.set_active(quiz.id)
    quizzes.submit_answer(quiz.id, winner, "1", 100)
    quizzes.submit_answer(quiz.id, loser, "0", 50)

    quizzes.deactivate(quiz.id)

    assert _wallet(db, winner.id) == 1100
    assert _wallet(db, loser.id) == 950
    answers = {answer.user_id: answer for answer in quizzes.get_quiz_answers(quiz.id)}
    assert answers[winner.id].is_correct is True
    assert answers[winner.id].points_won == 200
    assert answers[loser.id].is_correct is False
    assert answers[loser.id].points_won == 0
    assert quizzes.get_quiz(quiz.id).settled_at is not None


def test_settle_is_idempotent(db, quizzes):
    user = make_user(db, "carol", wallet=1000)
    quiz = quizzes.create_quiz("Q?", OPTIONS, "0")
    quizzes.set_active(quiz.id)
    quizzes.submit_answer(quiz.id, user, "0", 10)
    quizzes.deactivate(quiz.id)

    quizzes.settle_quiz(quiz.id)
    quizzes.settle_quiz(quiz.id)

    assert _wallet(db, user.id) == 1010


def test_settle_requires_inactive_quiz(quizzes):
    quiz = quizzes.create_quiz("Q?", OPTIONS, "0")
    quizzes.set_active(quiz.id)
    with pytest.raises(ValidationFailed):
        quizzes.settle_quiz(quiz.id)


def test_switching_quizzes_settles_the_previous_one(db, quizzes):
    user = make_user(db, "erin", wallet=1000)
    first = quizzes.create_quiz("One?", OPTIONS, "1")
    second = quizzes.create_quiz("Two?", OPTIONS, "0")
    quizzes.set_active(first.id)
    quizzes.submit_answer(first.id, user, "1", 50)

    quizzes.set_active(second.id)

    assert quizzes.get_quiz(first.id).settled_at is not None
    [answer] = quizzes.get_quiz_answers(first.id)
    assert answer.is_correct is True
    assert _wallet(db, user.id) == 1050
    assert quizzes.get_quiz(second.id).settled_at is None


def test_settled_quiz_cannot_be_reactivated(db, quizzes):
    user = make_user(db, "frank", wallet=1000)
    quiz = quizzes.create_quiz("Q?", OPTIONS, "0")
    quizzes.set_active(quiz.id)
    quizzes.deactivate(quiz.id)

    with pytest.raises(ValidationFailed, match="already been settled"):
        quizzes.set_active(quiz.id)
    assert quizzes.get_active() is None
    with pytest.raises(ValidationFailed, match="not accepting answers"):
        quizzes.submit_answer(quiz.id, user, "0", 10)


def test_reactivating_the_active_quiz_keeps_its_clock(db, quizzes):
    quiz = quizzes.create_quiz("Q?", OPTIONS, "0")
    started = quizzes.set_active(quiz.id).activated_at

    assert started is not None
    assert quizzes.set_active(quiz.id).activated_at == started


def test_answers_after_time_limit_are_rejected(db, quizzes):
    user = make_user(db, "gina", wallet=1000)
    quiz = quizzes.create_quiz("Q?", OPTIONS, "0", time_limit=5)
    quizzes.set_active(quiz.id)
    quiz.activated_at = datetime.utcnow() - timedelta(seconds=6)
    db.commit()

    with pytest.raises(ValidationFailed, match="Time is up"):
        quizzes.submit_answer(quiz.id, user, "0", 10)
    assert _wallet(db, user.id) == 1000


def test_stale_settlement_does_not_pay_twice(db, quizzes):
    user = make_user(db, "hank", wallet=1000)
    quiz = quizzes.create_quiz("Q?", OPTIONS, "0")
    quizzes.set_active(quiz.id)
    quizzes.submit_answer(quiz.id, user, "0", 100)
    # Pending answers read by a settlement that loses the race.
    pending = quizzes.get_quiz_answers(quiz.id)

    quizzes.deactivate(quiz.id)
    assert quizzes._resolve_answers(quiz, pending) == 0
    db.commit()

    assert _wallet(db, user.id) == 1100


def test_viewers_never_see_the_answer_of_an_active_quiz(client, db, viewer):
    viewer_token, _ = viewer
    db.add(
        Quiz(
            question="Leaked?",
            options=[{"id": "0", "text": "A"}, {"id": "1", "text": "B"}],
            correct_option_id="1",
            is_active=True,
            settled_at=datetime.utcnow(),
        )
    )
    db.commit()

    active = client.get("/quizzes/active", headers=auth(viewer_token)).json()
    assert active["question"] == "Leaked?"
    assert active["correct_option_id"] is None


def test_quiz_routes(client, admin, viewer):
    admin_token, _ = admin
    viewer_token, viewer_user = viewer

    forbidden = client.post(
        "/quizzes/",
        json={"question": "Q?", "options": OPTIONS, "correct_option_id": "0"},
        headers=auth(viewer_token),
    )
    assert forbidden.status_code == 403

    created = client.post(
        "/quizzes/",
        json={"question": "Q?", "options": OPTIONS, "correct_option_id": "2", "time_limit": 15},
        headers=auth(admin_token),
    )
    assert created.status_code == 201
    quiz = created.json()
    assert quiz["correct_option_id"] == "2"
    assert quiz["time_limit"] == 15

    client.post(f"/quizzes/{quiz['id']}/activate", headers=auth(admin_token))
    active = client.get("/quizzes/active", headers=auth(viewer_token)).json()
    assert active["id"] == quiz["id"]
    assert active["correct_option_id"] is None

    answer = client.post(
        f"/quizzes/{quiz['id']}/answers",
        json={"selected_option_id": "2", "bet_amount": 300},
        headers=auth(viewer_token),
    )
    assert answer.status_code == 201
    again = client.post(
        f"/quizzes/{quiz['id']}/answers",
        json={"selected_option_id": "1", "bet_amount": 10},
        headers=auth(viewer_token),
    )
    assert again.status_code == 409

    assert client.get(f"/quizzes/{quiz['id']}/answers", headers=auth(viewer_token)).status_code == 403
    answers = client.get(f"/quizzes/{quiz['id']}/answers", headers=auth(admin_token)).json()
    assert [item["user_id"] for item in answers] == [viewer_user["id"]]

    client.post(f"/quizzes/{quiz['id']}/deactivate", headers=auth(admin_token))
    settlement = client.post(f"/quizzes/{quiz['id']}/settle", headers=auth(admin_token)).json()
    assert settlement == {"quiz_id": quiz["id"], "answers": 1, "winners": 1, "paid_out": 600}

    assert client.get("/users/me", headers=auth(viewer_token)).json()["wallet"] == 1300
    listed = client.get("/quizzes/", headers=auth(viewer_token)).json()
    assert listed[0]["correct_option_id"] == "2"

    reactivated = client.post(f"/quizzes/{quiz['id']}/activate", headers=auth(admin_token))
    assert reactivated.status_code == 400
    assert client.get("/quizzes/active", headers=auth(viewer_token)).json() is None
