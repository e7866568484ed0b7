# app/services/case_selection.py
"""
세션 안에서 케이스를 고르는 규칙.

- 한 번 사용한 케이스 id 는 session.used_case_ids 에 남고, 이후 랜덤 선택에서 제외된다.
- 최초 선택(TOPIC)에서 후보가 모두 사용되었으면 목록을 비우고 다시 고른다.
- 다음 케이스 선택에서는 초기화하지 않는다. 같은 카테고리가 소진되면
  남은 토픽을 안내하고, 남은 토픽도 없으면 세션을 끝낸다.
"""
import enum
import logging
import random
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.orm import Session

from app.errors import SessionError
from app.models.cases import Case, Category
from app.models.sessions import PracticeSession, SessionType

logger = logging.getLogger(__name__)

RANDOM_TOPIC = "Random"


class SelectionOutcome(str, enum.Enum):
    SELECTED = "SELECTED"
    TOPIC_EXHAUSTED = "TOPIC_EXHAUSTED"
    SESSION_EXHAUSTED = "SESSION_EXHAUSTED"


@dataclass
class CaseSelection:
    outcome: SelectionOutcome
    case: Case | None = None
    completed_topic: str | None = None
    available_topics: list[str] = field(default_factory=list)


# ----------------------------
# 사용 이력
# ----------------------------
def used_ids(session: PracticeSession) -> set[int]:
    return set(session.used_case_ids or [])


def mark_case_used(session: PracticeSession, case_id: int | None) -> bool:
    """케이스를 사용 목록에 추가. 이미 있으면 False."""
    if case_id is None:
        return False
    ids = list(session.used_case_ids or [])
    if case_id in ids:
        return False
    # JSON 컬럼은 새 리스트로 바꿔야 변경이 감지된다
    session.used_case_ids = ids + [case_id]
    return True


def pick_unused(candidates: list[Case], used: set[int], rng=random) -> Case | None:
    pool = [c for c in candidates if c.id not in used]
    if not pool:
        return None
    return rng.choice(pool)


# ----------------------------
# 후보 조회
# ----------------------------
def is_random_topics(topics) -> bool:
    return not topics or RANDOM_TOPIC in topics


def candidate_cases_for_topics(db: Session, topics) -> list[Case]:
    q = db.query(Case)
    if not is_random_topics(topics):
        q = q.join(Category, Case.category_id == Category.id).filter(Category.name.in_(list(topics)))
    return q.order_by(Case.id).all()


def candidate_cases_for_category(db: Session, category_id: int) -> list[Case]:
    return db.query(Case).filter(Case.category_id == category_id).order_by(Case.id).all()


def _as_iso(value) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


def candidate_recall_cases(db: Session, start, end) -> list[Case]:
    # recall_dates 는 YYYY-MM-DD 문자열이라 문자열 비교로 범위를 판단한다
    start_s, end_s = _as_iso(start), _as_iso(end)
    cases = db.query(Case).filter(Case.is_recall_case.is_(True)).order_by(Case.id).all()
    return [
        c for c in cases
        if any(start_s <= str(d) <= end_s for d in (c.recall_dates or []))
    ]


def available_topics(db: Session, session: PracticeSession, current_topic: str | None) -> list[str]:
    excluded = set(session.selected_topics or []) | {RANDOM_TOPIC}
    if current_topic:
        excluded.add(current_topic)
    names = [name for (name,) in db.query(Category.name).order_by(Category.name).all()]
    return [n for n in names if n not in excluded]


# ----------------------------
# 선택
# ----------------------------
def select_initial_case(db: Session, session: PracticeSession, rng=random) -> Case | None:
    used = used_ids(session)

    if session.session_type == SessionType.RECALL:
        if session.recall_start_date is None or session.recall_end_date is None:
            return None
        candidates = candidate_recall_cases(db, session.recall_start_date, session.recall_end_date)
        return pick_unused(candidates, used, rng)

    candidates = candidate_cases_for_topics(db, session.selected_topics)
    chosen = pick_unused(candidates, used, rng)
    if chosen is None and candidates:
        # 토픽 케이스를 전부 사용 -> 이력 초기화 후 다시 선택
        logger.info("[CASE] all %d topic cases used in %s, resetting", len(candidates), session.code)
        session.used_case_ids = []
        chosen = rng.choice(candidates)
    return chosen


def select_next_case(db: Session, session: PracticeSession, rng=random) -> CaseSelection:
    current = session.selected_case
    if current is not None:
        mark_case_used(session, current.id)
    used = used_ids(session)

    if session.session_type == SessionType.RECALL:
        if session.recall_start_date is None or session.recall_end_date is None:
            raise SessionError("Recall session missing date range information")
        candidates = candidate_recall_cases(db, session.recall_start_date, session.recall_end_date)
        chosen = pick_unused(candidates, used, rng)
        if chosen is None:
            logger.info("[CASE] recall range exhausted for %s", session.code)
            return CaseSelection(SelectionOutcome.SESSION_EXHAUSTED)
        return CaseSelection(SelectionOutcome.SELECTED, case=chosen)

    if current is None or current.category is None:
        raise SessionError("No current case to continue from")

    chosen = pick_unused(candidate_cases_for_category(db, current.category_id), used, rng)
    if chosen is not None:
        return CaseSelection(SelectionOutcome.SELECTED, case=chosen)

    topic = current.category.name
    topics = available_topics(db, session, topic)
    logger.info("[CASE] topic %s exhausted for %s, %d topics left", topic, session.code, len(topics))
    if topics:
        return CaseSelection(SelectionOutcome.TOPIC_EXHAUSTED, completed_topic=topic, available_topics=topics)
    return CaseSelection(SelectionOutcome.SESSION_EXHAUSTED, completed_topic=topic)


def select_case_for_topic(db: Session, session: PracticeSession, topic: str, rng=random) -> Case:
    category = db.query(Category).filter(Category.name == topic).first()
    candidates = candidate_cases_for_category(db, category.id) if category else []
    if not candidates:
        raise SessionError(f"No cases found for topic: {topic}")
    # 아직 안 쓴 케이스 우선
    return pick_unused(candidates, used_ids(session), rng) or rng.choice(candidates)
