import threading
from datetime import timedelta

import pytest

from quiz_api import models
from quiz_api.errors import AlreadyCompletedError, ForbiddenError, NotFoundError, ValidationError
from quiz_api.services import score_responses


def _answer(question, correct=True):
    option = next(o for o in question.options if o.is_correct == correct)
    return {"question_id": question.id, "option_id": option.id}


def test_start_is_idempotent_while_in_progress(attempts, alice, two_question_quiz):
    quiz, _ = two_question_quiz
    first = attempts.start_attempt(alice.user_id, quiz.id)
    second = attempts.start_attempt(alice.user_id, quiz.id)
    assert first.id == second.id
    assert second.started_at == first.started_at
    assert second.completed_at is None and second.score is None


def test_start_unknown_quiz(attempts, alice):
    with pytest.raises(NotFoundError):
        attempts.start_attempt(alice.user_id, 7)


def test_start_after_completion_fails(attempts, alice, two_question_quiz):
    quiz, _ = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    attempts.submit_responses(attempt.id, alice.user_id, [])
    with pytest.raises(AlreadyCompletedError):
        attempts.start_attempt(alice.user_id, quiz.id)


@pytest.mark.parametrize("picks,expected", [
    ({0: True}, 10),
    ({0: True, 1: True}, 25),
    ({}, 0),
    ({0: False, 1: True}, 15),
    ({0: False, 1: False}, 0),
])
def test_scoring(attempts, alice, two_question_quiz, picks, expected):
    quiz, questions = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    responses = [_answer(questions[i], correct) for i, correct in picks.items()]
    result = attempts.submit_responses(attempt.id, alice.user_id, responses)
    assert result.score == expected
    assert result.status == "completed"
    assert result.completed_at is not None
    assert len(result.responses) == len(responses)


def test_second_submit_rejected_and_score_kept(attempts, alice, two_question_quiz):
    quiz, (q1, q2) = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    first = attempts.submit_responses(attempt.id, alice.user_id, [_answer(q1)])
    assert first.score == 10
    with pytest.raises(AlreadyCompletedError):
        attempts.submit_responses(attempt.id, alice.user_id, [_answer(q1), _answer(q2)])
    view = attempts.get_attempt_view(attempt.id, alice.user_id)
    assert view.score == 10
    assert view.completed_at == first.completed_at
    assert [r.question_id for r in view.responses] == [q1.id]


def test_expired_attempt_completes_on_next_read(attempts, clock, alice, two_question_quiz):
    quiz, _ = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    clock.advance(seconds=61)
    view = attempts.get_attempt_view(attempt.id, alice.user_id)
    assert view.status == "completed"
    assert view.score == 0
    assert view.completed_at is not None
    with pytest.raises(AlreadyCompletedError):
        attempts.submit_responses(attempt.id, alice.user_id, [])


def test_deadline_is_inclusive(attempts, clock, alice, two_question_quiz):
    quiz, _ = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    clock.advance(seconds=59)
    assert attempts.get_attempt_view(attempt.id, alice.user_id).status == "in-progress"
    clock.advance(seconds=1)
    assert attempts.get_attempt_view(attempt.id, alice.user_id).status == "completed"


def test_expiry_scores_saved_answers(attempts, clock, alice, two_question_quiz):
    quiz, (q1, q2) = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    attempts.save_responses(attempt.id, alice.user_id, [_answer(q1), _answer(q2, correct=False)])
    # changing an answer before submission is allowed
    attempts.save_responses(attempt.id, alice.user_id, [_answer(q2)])
    clock.advance(minutes=2)
    with pytest.raises(AlreadyCompletedError):
        attempts.submit_responses(attempt.id, alice.user_id, [])
    view = attempts.get_attempt_view(attempt.id, alice.user_id)
    assert view.score == 25
    assert len(view.responses) == 2


def test_start_after_expiry_fails(attempts, clock, alice, two_question_quiz):
    quiz, _ = two_question_quiz
    attempts.start_attempt(alice.user_id, quiz.id)
    clock.advance(minutes=5)
    with pytest.raises(AlreadyCompletedError):
        attempts.start_attempt(alice.user_id, quiz.id)
    assert attempts.get_attempt_for_quiz(alice.user_id, quiz.id).status == "completed"


def test_in_progress_view_hides_answers(attempts, alice, two_question_quiz):
    quiz, (q1, _) = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    saved = attempts.save_responses(attempt.id, alice.user_id, [_answer(q1)])
    assert saved.status == "in-progress"
    assert saved.responses == []
    view = attempts.get_attempt_for_quiz(alice.user_id, quiz.id)
    assert view.responses == []
    assert view.expires_at == view.started_at + timedelta(minutes=1)


def test_completed_view_joins_question_and_option(attempts, alice, two_question_quiz):
    quiz, (q1, q2) = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    result = attempts.submit_responses(attempt.id, alice.user_id, [_answer(q1), _answer(q2, correct=False)])
    by_question = {r.question_id: r for r in result.responses}
    assert by_question[q1.id].question.marks == 10
    assert by_question[q1.id].selected_option.is_correct is True
    assert by_question[q2.id].selected_option.is_correct is False
    assert result.quiz.id == quiz.id


def test_only_owner_can_touch_attempt(attempts, alice, make_user, two_question_quiz):
    quiz, (q1, _) = two_question_quiz
    bob = make_user("bob")
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    with pytest.raises(ForbiddenError):
        attempts.submit_responses(attempt.id, bob.user_id, [_answer(q1)])
    with pytest.raises(ForbiddenError):
        attempts.get_attempt_view(attempt.id, bob.user_id)
    with pytest.raises(ForbiddenError):
        attempts.save_responses(attempt.id, bob.user_id, [_answer(q1)])
    assert attempts.get_attempt_view(attempt.id, alice.user_id).status == "in-progress"


def test_invalid_responses_rejected_without_completing(catalog, admin, attempts, alice, two_question_quiz):
    quiz, (q1, q2) = two_question_quiz
    other = catalog.create_quiz(admin, "Other", 5, 5)
    foreign = catalog.add_question(admin, other.id, "Q", 5, [
        {"text": "a", "is_correct": True},
        {"text": "b", "is_correct": False},
    ])
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    bad_payloads = [
        [_answer(foreign)],
        [{"question_id": q1.id, "option_id": q2.options[0].id}],
        [{"question_id": q1.id, "option_id": 9999}],
        [_answer(q1), _answer(q1, correct=False)],
    ]
    for payload in bad_payloads:
        with pytest.raises(ValidationError):
            attempts.submit_responses(attempt.id, alice.user_id, payload)
    result = attempts.submit_responses(attempt.id, alice.user_id, [_answer(q1)])
    assert result.score == 10


def test_submit_for_quiz_requires_started_attempt(attempts, alice, two_question_quiz):
    quiz, _ = two_question_quiz
    with pytest.raises(NotFoundError):
        attempts.submit_for_quiz(alice.user_id, quiz.id, [])
    with pytest.raises(NotFoundError):
        attempts.get_attempt_for_quiz(alice.user_id, quiz.id)


def test_score_responses_is_pure():
    questions = [models.Question(id=1, quiz_id=1, text="a", marks=10), models.Question(id=2, quiz_id=1, text="b", marks=15)]
    options = [
        models.Option(id=1, question_id=1, text="x", is_correct=True),
        models.Option(id=2, question_id=1, text="y", is_correct=False),
        models.Option(id=3, question_id=2, text="z", is_correct=True),
    ]
    responses = [
        models.Response(attempt_id=1, question_id=1, option_id=1),
        models.Response(attempt_id=1, question_id=2, option_id=1),  # option of another question
    ]
    assert score_responses(questions, options, responses) == 10
    assert score_responses(questions, options, responses) == 10
    assert score_responses(questions, options, []) == 0


def test_concurrent_starts_create_one_attempt(attempts, catalog, admin, alice, two_question_quiz):
    quiz, _ = two_question_quiz
    ids = []
    errors = []
    barrier = threading.Barrier(8)

    def _start():
        barrier.wait()
        try:
            ids.append(attempts.start_attempt(alice.user_id, quiz.id).id)
        except Exception as exc:  # collected and asserted below
            errors.append(exc)

    threads = [threading.Thread(target=_start) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert len(set(ids)) == 1
    assert len(catalog.list_participants(admin, quiz.id)) == 1


def test_concurrent_submit_and_expiry_complete_once(attempts, clock, alice, two_question_quiz):
    quiz, (q1, q2) = two_question_quiz
    attempt = attempts.start_attempt(alice.user_id, quiz.id)
    attempts.save_responses(attempt.id, alice.user_id, [_answer(q1)])
    clock.advance(seconds=60)
    outcomes = []
    barrier = threading.Barrier(6)

    def _submit():
        barrier.wait()
        try:
            attempts.submit_responses(attempt.id, alice.user_id, [_answer(q1), _answer(q2)])
            outcomes.append("submitted")
        except AlreadyCompletedError:
            outcomes.append("rejected")

    def _read():
        barrier.wait()
        outcomes.append(attempts.get_attempt_view(attempt.id, alice.user_id).score)

    threads = [threading.Thread(target=_submit) for _ in range(3)] + [threading.Thread(target=_read) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    # the deadline has passed, so nobody can submit and every reader sees the same score
    assert outcomes.count("rejected") == 3
    assert [o for o in outcomes if o != "rejected"] == [10, 10, 10]
