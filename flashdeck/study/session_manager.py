import os
import random
from enum import Enum
from datetime import datetime, timedelta, timezone, date
from typing import Optional, Dict, Any, List

from pydantic import ValidationError

from flashdeck.utils import get_logger, log_review
from flashdeck.storage import Repository, RepositoryError, NotFoundError, utcnow_iso
from .scheduler import ReviewScheduler, CardReviewStats

LOG = get_logger()

ANONYMOUS_USER_ID = os.getenv('ANONYMOUS_USER_ID', 'anonymous')


class SessionError(Exception):
    pass


class SessionValidationError(SessionError):
    pass


class SessionNotFoundError(SessionError):
    pass


class StudyMode(str, Enum):
    FLASHCARD = 'flashcard'
    QUIZ = 'quiz'
    TRUE_FALSE = 'truefalse'


class SessionStatus(str, Enum):
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def next_streak(current: Optional[Dict[str, Any]], today: date) -> int:
    """Streak count after studying on ``today``.

    Studying again on the same day or the day after the last study date keeps
    the streak going; any longer gap starts over at 1.
    """
    if not current:
        return 1
    try:
        last = date.fromisoformat(current.get('last_study_date') or '')
    except ValueError:
        return 1
    if last == today or last == today - timedelta(days=1):
        return int(current.get('streak_count') or 0) + 1
    return 1


class SessionManager:
    _instance = None

    def __init__(self, repository: Optional[Repository] = None, scheduler: Optional[ReviewScheduler] = None):
        self.repo = repository or Repository.get_instance()
        self.scheduler = scheduler or ReviewScheduler()

    @classmethod
    def get_instance(cls) -> 'SessionManager':
        if cls._instance is None:
            cls._instance = SessionManager()
        return cls._instance

    def _require_session(self, session_id: str) -> Dict[str, Any]:
        session = self.repo.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f'Session {session_id} not found')
        return session

    def start_session(self, deck_ids: List[int], mode: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        if not deck_ids:
            raise SessionValidationError('At least one deck id is required')
        try:
            mode = StudyMode(mode).value
        except ValueError:
            raise SessionValidationError(f'mode must be one of {"|".join(m.value for m in StudyMode)}')
        for deck_id in deck_ids:
            try:
                self.repo.get_deck(deck_id)
            except NotFoundError as e:
                raise SessionValidationError(str(e)) from e
        session = self.repo.create_session(user_id or ANONYMOUS_USER_ID, mode, deck_ids)
        total = len(self.repo.cards_for_decks(deck_ids))
        LOG.info('study_session_started', extra={'session_id': session['id'], 'mode': mode, 'deck_ids': deck_ids, 'total_cards': total})
        return {**session, 'total_cards': total}

    def get_session(self, session_id: str, deck_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        session = self._require_session(session_id)
        effective = deck_ids or session.get('deck_ids') or []
        total = len(self.repo.cards_for_decks(effective))
        return {**session, 'deck_ids': effective, 'total_cards': total}

    def session_cards(self, session_id: str, deck_ids: Optional[List[int]] = None) -> List[Dict[str, Any]]:
        session = self._require_session(session_id)
        effective = deck_ids or session.get('deck_ids') or []
        cards = [
            {k: c.get(k) for k in ('id', 'deck_id', 'front', 'back', 'front_rich', 'back_rich')}
            for c in self.repo.cards_for_decks(effective)
        ]
        random.shuffle(cards)
        return cards

    def _update_stats(self, session_id: str, card_id: str, correct: bool) -> Optional[Dict[str, Any]]:
        prev_row = self.repo.get_stats(card_id)
        prev = None
        if prev_row:
            try:
                prev = CardReviewStats(**{k: prev_row[k] for k in ('correct_count', 'wrong_count', 'difficulty', 'due_date', 'last_study_time') if k in prev_row})
            except ValidationError:
                LOG.warning('card_stats_unreadable', extra={'card_id': card_id})
                prev = None
        stats = self.scheduler.apply(prev, correct)
        row = self.repo.put_stats(card_id, stats.model_dump(mode='json'))
        log_review(session_id, card_id, correct, stats.difficulty, row['due_date'])
        return row

    def submit_answer(self, session_id: str, card_id: str, correct: bool, time_taken: float = 0.0, difficulty: Optional[str] = None) -> Dict[str, Any]:
        if not session_id or not card_id:
            raise SessionValidationError('session_id and card_id are required')
        if self.repo.get_session(session_id) is None:
            LOG.warning('submit_answer_unknown_session', extra={'session_id': session_id})
        log = self.repo.add_log({
            'session_id': session_id,
            'card_id': card_id,
            'correct': bool(correct),
            'answered_at': utcnow_iso(),
            'time_taken': float(time_taken or 0),
            'difficulty': difficulty,
        })
        stats = None
        try:
            stats = self._update_stats(session_id, card_id, bool(correct))
        except RepositoryError:
            LOG.exception('card_stats_update_failed', exc_info=True)
        return {'log': log, 'stats': stats}

    def _update_streak(self, user_id: str, today: date) -> Optional[Dict[str, Any]]:
        current = self.repo.get_streak(user_id)
        count = next_streak(current, today)
        return self.repo.put_streak(user_id, {'streak_count': count, 'last_study_date': today.isoformat()})

    def complete_session(self, session_id: str) -> Dict[str, Any]:
        session = self._require_session(session_id)
        now = datetime.now(timezone.utc)
        session['status'] = SessionStatus.COMPLETED.value
        session['end_time'] = now.isoformat()
        self.repo.put_session(session)
        streak = None
        try:
            streak = self._update_streak(session.get('user_id') or ANONYMOUS_USER_ID, now.date())
        except RepositoryError:
            LOG.exception('streak_update_failed', exc_info=True)
        LOG.info('study_session_completed', extra={'session_id': session_id})
        return {'session': session, 'streak': streak}

    def session_result(self, session_id: str) -> Dict[str, Any]:
        session = self._require_session(session_id)
        logs = self.repo.session_logs(session_id)
        correct = sum(1 for lg in logs if lg.get('correct'))
        incorrect = len(logs) - correct
        start, end = _parse_ts(session.get('start_time')), _parse_ts(session.get('end_time'))
        if start and end:
            total_time = int((end - start).total_seconds())
        else:
            total_time = sum(float(lg.get('time_taken') or 0) for lg in logs)
        cards = {c['id']: c for c in self.repo.cards_by_ids(list({lg['card_id'] for lg in logs}))}
        card_stats = []
        for lg in logs:
            card = cards.get(lg['card_id'], {})
            card_stats.append({
                'card_id': lg['card_id'],
                'question': card.get('front', ''),
                'answer': card.get('back', ''),
                'is_correct': bool(lg.get('correct')),
                'time_taken': lg.get('time_taken') or 0,
            })
        return {
            'session_id': session_id,
            'mode': session.get('mode'),
            'status': session.get('status'),
            'correct_count': correct,
            'incorrect_count': incorrect,
            'total_time': total_time,
            'accuracy': (correct / len(logs)) if logs else 0,
            'card_stats': card_stats,
        }
