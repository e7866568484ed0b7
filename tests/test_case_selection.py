# tests/test_case_selection.py
import random
from datetime import date

import pytest

from app.errors import SessionError
from app.models.sessions import PracticeSession, SessionType
from app.services.case_selection import (
    SelectionOutcome, candidate_recall_cases, mark_case_used, select_case_for_topic, select_initial_case,
    select_next_case,
)


def _session(**kwargs) -> PracticeSession:
    values = dict(code="100200", session_type=SessionType.TOPIC, selected_topics=["Random"], used_case_ids=[])
    values.update(kwargs)
    return PracticeSession(**values)


def _ids(*cases) -> set[int]:
    return {c.id for c in cases}


def test_mark_case_used_replaces_list():
    session = _session(used_case_ids=[1])
    before = session.used_case_ids

    assert mark_case_used(session, 2) is True
    assert session.used_case_ids == [1, 2]
    assert session.used_case_ids is not before
    assert mark_case_used(session, 2) is False
    assert mark_case_used(session, None) is False


def test_initial_topic_case_skips_used(db, cases):
    session = _session(
        selected_topics=["Cardiology"],
        used_case_ids=[cases["chest_pain"].id, cases["palpitations"].id],
    )
    chosen = select_initial_case(db, session, random.Random(1))
    assert chosen.id == cases["heart_failure"].id


def test_initial_topic_case_resets_when_all_used(db, cases):
    cardio = _ids(cases["chest_pain"], cases["palpitations"], cases["heart_failure"])
    session = _session(selected_topics=["Cardiology"], used_case_ids=sorted(cardio))

    chosen = select_initial_case(db, session, random.Random(2))

    assert chosen.id in cardio
    assert session.used_case_ids == []


def test_initial_random_topic_uses_all_categories(db, cases):
    session = _session(selected_topics=["Random"])
    seen = {select_initial_case(db, session, random.Random(seed)).id for seed in range(40)}
    assert seen <= _ids(*cases.values())
    assert len(seen) > 1


def test_recall_cases_filtered_by_date_range(db, cases):
    found = candidate_recall_cases(db, date(2024, 9, 1), date(2024, 9, 30))
    assert _ids(*found) == _ids(cases["palpitations"], cases["asthma"])

    single_day = candidate_recall_cases(db, date(2024, 3, 12), date(2024, 3, 12))
    assert _ids(*single_day) == _ids(cases["chest_pain"])


def test_initial_recall_case_none_when_range_used_up(db, cases):
    session = _session(
        session_type=SessionType.RECALL,
        recall_start_date=date(2024, 9, 1),
        recall_end_date=date(2024, 9, 30),
        used_case_ids=[cases["palpitations"].id, cases["asthma"].id],
    )
    assert select_initial_case(db, session) is None


def test_initial_recall_case_needs_dates(db, cases):
    session = _session(session_type=SessionType.RECALL)
    assert select_initial_case(db, session) is None


def test_next_case_stays_in_current_category(db, cases):
    session = _session(selected_topics=["Cardiology"], used_case_ids=[cases["palpitations"].id])
    session.selected_case = cases["chest_pain"]

    selection = select_next_case(db, session, random.Random(3))

    assert selection.outcome == SelectionOutcome.SELECTED
    assert selection.case.id == cases["heart_failure"].id
    assert cases["chest_pain"].id in session.used_case_ids


def test_next_case_topic_exhausted_lists_other_topics(db, cases):
    session = _session(
        selected_topics=["Cardiology"],
        used_case_ids=[cases["palpitations"].id, cases["heart_failure"].id],
    )
    session.selected_case = cases["chest_pain"]

    selection = select_next_case(db, session)

    assert selection.outcome == SelectionOutcome.TOPIC_EXHAUSTED
    assert selection.completed_topic == "Cardiology"
    assert selection.available_topics == ["Neurology", "Respiratory"]


def test_next_case_session_exhausted_when_no_topics_left(db, cases):
    session = _session(selected_topics=["Neurology", "Respiratory", "Cardiology"])
    session.selected_case = cases["headache"]

    selection = select_next_case(db, session)

    assert selection.outcome == SelectionOutcome.SESSION_EXHAUSTED
    assert selection.available_topics == []


def test_next_recall_case_within_range(db, cases):
    session = _session(
        session_type=SessionType.RECALL,
        recall_start_date=date(2024, 9, 1),
        recall_end_date=date(2024, 9, 30),
    )
    session.selected_case = cases["asthma"]

    first = select_next_case(db, session)
    assert first.outcome == SelectionOutcome.SELECTED
    assert first.case.id == cases["palpitations"].id

    session.selected_case = first.case
    second = select_next_case(db, session)
    assert second.outcome == SelectionOutcome.SESSION_EXHAUSTED


def test_next_recall_case_without_range_raises(db, cases):
    session = _session(session_type=SessionType.RECALL)
    session.selected_case = cases["asthma"]
    with pytest.raises(SessionError, match="missing date range"):
        select_next_case(db, session)


def test_next_topic_case_without_current_case_raises(db, cases):
    with pytest.raises(SessionError, match="No current case"):
        select_next_case(db, _session())


def test_case_for_topic_prefers_unused(db, cases):
    session = _session(used_case_ids=[cases["asthma"].id])
    assert select_case_for_topic(db, session, "Respiratory").id == cases["copd"].id

    session.used_case_ids = [cases["asthma"].id, cases["copd"].id]
    assert select_case_for_topic(db, session, "Respiratory").id in _ids(cases["asthma"], cases["copd"])


def test_case_for_unknown_topic_raises(db, cases):
    with pytest.raises(SessionError, match="No cases found for topic: Dermatology"):
        select_case_for_topic(db, _session(), "Dermatology")
