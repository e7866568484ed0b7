# app/services/session_timer.py
"""
세션 진행(phase) 타이머와 실시간 브로드캐스트.

- 타이머는 세션당 하나, 만료 시 1회만 실행되는 예약 작업으로 돌린다.
  클라이언트는 TIMER_START 의 startTimestamp/durationSeconds 로 직접 카운트다운한다.
- 예약 작업마다 generation 번호를 붙여, 스킵/재시작 이후 늦게 도착한 만료는 무시한다.
- 요청 경로는 요청의 DB 세션을 넘겨받고, 예약 콜백만 SessionLocal 을 새로 연다.
"""
import itertools
import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.config import settings
from app.db.base import SessionLocal, utcnow, epoch_millis
from app.errors import PermissionDeniedError, SessionError
from app.models.cases import Case
from app.models.sessions import SessionPhase, SessionStatus, TimingType, ParticipantRole
from app.models.user import User
from app.services import session_service as ss
from app.services.case_selection import mark_case_used, select_initial_case
from app.services.realtime import SessionEventHub, hub

logger = logging.getLogger(__name__)

NEXT_PHASE = {
    SessionPhase.READING: SessionPhase.CONSULTATION,
    SessionPhase.CONSULTATION: SessionPhase.FEEDBACK,
}


class ThreadingScheduler:
    """threading.Timer 기반 1회성 예약 실행. 반환값은 cancel() 을 가진다."""

    def schedule(self, delay_seconds: float, fn: Callable[[], None]):
        timer = threading.Timer(delay_seconds, fn)
        timer.daemon = True
        timer.start()
        return timer


@dataclass
class _PhaseTimer:
    generation: int
    phase: SessionPhase
    task: Any = None


class PhaseTimerService:
    def __init__(self, session_factory=SessionLocal, event_hub: SessionEventHub = hub, scheduler=None):
        self.session_factory = session_factory
        self.hub = event_hub
        self.scheduler = scheduler or ThreadingScheduler()
        self._generation = itertools.count(1)
        self._state_lock = threading.Lock()
        self._timers: dict[str, _PhaseTimer] = {}
        self._feedback_tasks: dict[str, tuple[int, Any]] = {}
        self._activity_tasks: dict[tuple[str, int], tuple[int, Any]] = {}

    # ----------------------------
    # 브로드캐스트
    # ----------------------------
    def broadcast_session_update(self, db: Session, code: str) -> None:
        session = ss.find_by_code(db, code)
        if session is None:
            return
        self.hub.broadcast(code, ss.session_update_payload(session))

    def broadcast_participant_update(self, db: Session, code: str) -> None:
        session = ss.find_by_code(db, code)
        if session is None:
            return
        self.hub.broadcast(code, {
            "type": "PARTICIPANT_UPDATE",
            "sessionCode": code,
            "participants": ss.participant_details(session),
        })

    def broadcast_phase_change(self, db: Session, code: str, phase: SessionPhase,
                               start_timestamp: int | None = None) -> None:
        session = ss.find_by_code(db, code)
        self.hub.broadcast(code, {
            "type": "PHASE_CHANGE",
            "sessionCode": code,
            "phase": phase.value,
            "durationSeconds": ss.phase_duration_seconds(session, phase) if session else 0,
            "startTimestamp": start_timestamp or epoch_millis(),
        })

    def broadcast_role_change(self, db: Session, code: str, message: str) -> None:
        self.hub.broadcast(code, {"type": "ROLE_CHANGE", "sessionCode": code, "message": message})
        self.broadcast_session_update(db, code)

    def broadcast_topic_selection_needed(self, code: str, completed_topic: str, available_topics: list[str]) -> None:
        self.hub.broadcast(code, {
            "type": "TOPIC_SELECTION_NEEDED",
            "sessionCode": code,
            "completedTopic": completed_topic,
            "availableTopics": available_topics,
            "message": f"Congratulations! All cases in {completed_topic} have been completed. "
                       f"Choose a new topic to continue:",
        })

    def send_case_data_to_all_participants(self, db: Session, code: str) -> None:
        session = ss.find_by_code(db, code)
        if session is None or session.selected_case is None:
            return
        for p in ss.active_participants(session):
            self.hub.send_to_user(p.user_id, code, {
                "type": "CASE_DATA",
                "sessionCode": code,
                "case": ss.case_payload_for_role(session.selected_case, p.role),
            })

    # ----------------------------
    # 진행 시작 / 새 케이스
    # ----------------------------
    def start_session(self, db: Session, code: str, user: User) -> None:
        session = ss.get_by_code(db, code)
        if not ss.is_user_host(session, user):
            raise PermissionDeniedError("Only the host can start the session")
        ss.require_not_ended(session)
        if session.phase != SessionPhase.WAITING:
            raise SessionError("Session has already started")

        if session.selected_case is None:
            # 설정 없이 시작한 경우 현재 설정으로 첫 케이스 선택
            case = select_initial_case(db, session)
            if case is None:
                raise SessionError("No cases available for this session")
            session.selected_case = case
        mark_case_used(session, session.selected_case.id)

        ss.start_phase(session, SessionPhase.READING)
        session.status = SessionStatus.IN_PROGRESS
        session.start_time = session.start_time or utcnow()
        db.commit()
        logger.info("[SESSION] started %s by user=%s", code, user.id)

        self.broadcast_session_update(db, code)
        self.broadcast_phase_change(db, code, SessionPhase.READING)
        self.start_timer(db, code)
        self.send_case_data_to_all_participants(db, code)

    def start_case(self, db: Session, code: str, case: Case) -> None:
        """새 라운드: 케이스 교체 -> READING 부터 다시 진행."""
        session = ss.get_by_code(db, code)
        ss.require_not_ended(session)
        self._cancel_feedback_timeout(code)

        session.selected_case = case
        session.current_round = (session.current_round or 1) + 1
        mark_case_used(session, case.id)
        ss.reset_participant_status(session)
        ss.start_phase(session, SessionPhase.READING)
        session.status = SessionStatus.IN_PROGRESS
        session.start_time = session.start_time or utcnow()
        db.commit()
        logger.info("[CASE] %s round=%s case=%s", code, session.current_round, case.id)

        self.broadcast_session_update(db, code)
        self.broadcast_phase_change(db, code, SessionPhase.READING)
        self.start_timer(db, code)
        self.send_case_data_to_all_participants(db, code)

    # ----------------------------
    # 타이머
    # ----------------------------
    def start_timer(self, db: Session, code: str) -> int | None:
        with ss.session_lock(code):
            self._cancel_phase_timer(code)
            session = ss.find_by_code(db, code)
            if session is None:
                return None

            phase = session.phase
            duration = ss.phase_duration_seconds(session)
            start_ts = epoch_millis()
            countdown = session.timing_type == TimingType.COUNTDOWN
            timing_type = session.timing_type.value

            session.time_remaining = duration
            session.phase_start_time = utcnow()
            session.timer_start_timestamp = start_ts
            db.commit()

            timer = _PhaseTimer(generation=next(self._generation), phase=phase)
            # STOPWATCH 는 자동 만료 없이 스킵으로만 넘어간다
            if countdown and duration > 0:
                timer.task = self.scheduler.schedule(
                    duration, partial(self._on_phase_timer_expired, code, timer.generation)
                )
            with self._state_lock:
                self._timers[code] = timer

        logger.info("[TIMER] start %s phase=%s duration=%ss gen=%s", code, phase.value, duration, timer.generation)
        self.hub.broadcast(code, {
            "type": "TIMER_START",
            "sessionCode": code,
            "phase": phase.value,
            "durationSeconds": duration,
            "startTimestamp": start_ts,
            "timingType": timing_type,
            "message": "Timer started - clients will handle countdown locally",
        })
        return timer.generation

    def stop_timer(self, db: Session, code: str) -> None:
        with ss.session_lock(code):
            self._cancel_phase_timer(code)
            session = ss.find_by_code(db, code)
            if session is not None and session.timer_start_timestamp is not None:
                session.timer_start_timestamp = None
                db.flush()

    def has_active_timer(self, code: str) -> bool:
        with self._state_lock:
            return code in self._timers

    def _cancel_phase_timer(self, code: str) -> None:
        with self._state_lock:
            timer = self._timers.pop(code, None)
        if timer is not None and timer.task is not None:
            timer.task.cancel()

    def _on_phase_timer_expired(self, code: str, generation: int) -> None:
        try:
            with ss.session_lock(code):
                with self._state_lock:
                    timer = self._timers.get(code)
                    if timer is None or timer.generation != generation:
                        logger.info("[TIMER] stale expiry ignored %s gen=%s", code, generation)
                        return
                    del self._timers[code]

                with self.session_factory() as db:
                    session = ss.find_by_code(db, code)
                    if session is None or session.phase != timer.phase:
                        return
                    logger.info("[TIMER] expired %s phase=%s", code, timer.phase.value)
                    self.handle_phase_transition(db, code)
                    db.commit()
        except Exception:
            logger.exception("[TIMER] expiry handling failed for %s", code)

    # ----------------------------
    # phase 전환
    # ----------------------------
    def handle_phase_transition(self, db: Session, code: str) -> None:
        session = ss.find_by_code(db, code)
        if session is None:
            return
        if session.phase == SessionPhase.FEEDBACK:
            self.end_session(db, code, "Session completed successfully")
            return
        next_phase = NEXT_PHASE.get(session.phase)
        if next_phase is not None:
            self._advance(db, session, next_phase)

    def skip_phase(self, db: Session, code: str, user: User) -> SessionPhase:
        with ss.session_lock(code):
            session = ss.get_by_code(db, code)
            participant = ss.get_participant(session, user.id)
            is_doctor = participant is not None and participant.is_active and participant.role == ParticipantRole.DOCTOR
            if not (is_doctor or user.is_admin):
                raise PermissionDeniedError("Only the doctor can skip phases")

            next_phase = NEXT_PHASE.get(session.phase)
            if next_phase is None:
                raise SessionError(f"Phase {session.phase.value} cannot be skipped")

            logger.info("[TIMER] skip %s %s -> %s by user=%s", code, session.phase.value, next_phase.value, user.id)
            self.stop_timer(db, code)
            self._advance(db, session, next_phase)
            return next_phase

    def _advance(self, db: Session, session, next_phase: SessionPhase) -> None:
        code = session.code
        ss.start_phase(session, next_phase)
        db.commit()
        self.broadcast_phase_change(db, code, next_phase)
        if next_phase == SessionPhase.FEEDBACK:
            self._schedule_feedback_timeout(code)
        else:
            self.start_timer(db, code)

    def _schedule_feedback_timeout(self, code: str) -> None:
        self._cancel_feedback_timeout(code)
        generation = next(self._generation)
        task = self.scheduler.schedule(
            settings.feedback_timeout_seconds, partial(self._on_feedback_timeout, code, generation)
        )
        with self._state_lock:
            self._feedback_tasks[code] = (generation, task)

    def _cancel_feedback_timeout(self, code: str) -> None:
        with self._state_lock:
            entry = self._feedback_tasks.pop(code, None)
        if entry is not None:
            entry[1].cancel()

    def _on_feedback_timeout(self, code: str, generation: int) -> None:
        with self._state_lock:
            entry = self._feedback_tasks.get(code)
            if entry is None or entry[0] != generation:
                return
            del self._feedback_tasks[code]
        try:
            with self.session_factory() as db:
                session = ss.find_by_code(db, code)
                if (session is not None and session.phase == SessionPhase.FEEDBACK
                        and session.status != SessionStatus.COMPLETED):
                    self.end_session(db, code, "Feedback phase timeout - session auto-completed")
                    db.commit()
        except Exception:
            logger.exception("[TIMER] feedback timeout handling failed for %s", code)

    # ----------------------------
    # 종료 / 퇴장
    # ----------------------------
    def end_session(self, db: Session, code: str, reason: str) -> bool:
        """세션 종료. 이미 끝난 세션이면 False (재방송 없음)."""
        with ss.session_lock(code):
            session = ss.find_by_code(db, code)
            if session is None:
                return False
            self._cancel_phase_timer(code)
            self._cancel_feedback_timeout(code)
            if session.status == SessionStatus.COMPLETED and session.phase == SessionPhase.COMPLETED:
                return False

            session.timer_start_timestamp = None
            session.phase = SessionPhase.COMPLETED
            session.status = SessionStatus.COMPLETED
            session.end_time = utcnow()
            db.commit()

        self._cancel_activity_for_session(code)
        logger.info("[SESSION] ended %s reason=%s", code, reason)
        self.hub.broadcast(code, {
            "type": "SESSION_ENDED",
            "sessionCode": code,
            "reason": reason,
            "timestamp": utcnow().isoformat(),
        })
        return True

    def handle_user_leave(self, db: Session, code: str, user_id: int) -> None:
        session = ss.find_by_code(db, code)
        if session is None:
            return
        participant = ss.get_participant(session, user_id)
        if participant is None:
            return

        participant.is_active = False
        db.commit()
        self.stop_user_activity_tracking(code, user_id)

        self.hub.broadcast(code, {
            "type": "USER_LEFT",
            "sessionCode": code,
            "userId": user_id,
            "userName": participant.user.name if participant.user else None,
            "userRole": participant.role.value.lower(),
        })
        logger.info("[SESSION] user=%s left %s", user_id, code)

        if session.status == SessionStatus.COMPLETED:
            return
        remaining = ss.active_participants(session)
        if len(remaining) < 2:
            self.end_session(db, code, "Not enough participants remaining")
            return
        if not any(p.role == ParticipantRole.DOCTOR for p in remaining):
            self.end_session(db, code, "Doctor has left the session")
            return
        self.broadcast_participant_update(db, code)

    # ----------------------------
    # 접속 유지 추적 (일정 시간 활동이 없으면 퇴장 처리)
    # ----------------------------
    def track_user_activity(self, code: str, user_id: int) -> None:
        key = (code, user_id)
        generation = next(self._generation)
        with self._state_lock:
            old = self._activity_tasks.pop(key, None)
        if old is not None:
            old[1].cancel()
        task = self.scheduler.schedule(
            settings.disconnect_timeout_seconds, partial(self._on_user_inactive, code, user_id, generation)
        )
        with self._state_lock:
            self._activity_tasks[key] = (generation, task)

    def stop_user_activity_tracking(self, code: str, user_id: int) -> None:
        with self._state_lock:
            entry = self._activity_tasks.pop((code, user_id), None)
        if entry is not None:
            entry[1].cancel()

    def is_tracking(self, code: str, user_id: int) -> bool:
        with self._state_lock:
            return (code, user_id) in self._activity_tasks

    def _cancel_activity_for_session(self, code: str) -> None:
        with self._state_lock:
            keys = [k for k in self._activity_tasks if k[0] == code]
            entries = [self._activity_tasks.pop(k) for k in keys]
        for _, task in entries:
            task.cancel()

    def _on_user_inactive(self, code: str, user_id: int, generation: int) -> None:
        key = (code, user_id)
        with self._state_lock:
            entry = self._activity_tasks.get(key)
            if entry is None or entry[0] != generation:
                return
            del self._activity_tasks[key]
        try:
            with self.session_factory() as db:
                session = ss.find_by_code(db, code)
                if session is None or session.status == SessionStatus.COMPLETED:
                    return
                logger.info("[SESSION] user=%s inactive in %s, removing", user_id, code)
                self.handle_user_leave(db, code, user_id)
                db.commit()
        except Exception:
            logger.exception("[SESSION] inactivity handling failed for %s user=%s", code, user_id)

    # ----------------------------
    def shutdown(self) -> None:
        with self._state_lock:
            tasks = [t.task for t in self._timers.values() if t.task is not None]
            tasks += [task for _, task in self._feedback_tasks.values()]
            tasks += [task for _, task in self._activity_tasks.values()]
            self._timers.clear()
            self._feedback_tasks.clear()
            self._activity_tasks.clear()
        for task in tasks:
            task.cancel()
        logger.info("[TIMER] shutdown, cancelled %d scheduled tasks", len(tasks))


timer_service = PhaseTimerService()
