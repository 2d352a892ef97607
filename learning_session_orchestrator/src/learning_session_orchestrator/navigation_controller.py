"""
Session Navigation Controller

Single authority for what is on screen. Reconciles auth state, deep-link
query parameters, user navigation actions and role into one SessionState.

Transitions follow ALLOWED_TRANSITIONS and the role's screen set. Anything
else is refused: the state is left untouched, the refusal is logged at
debug level, and the method returns False. Nothing here raises to the
presentation layer.

Completion callbacks from screens turn into a transition plus a write
through the Progress Sync Engine. The in-memory progress map updates
before the screen changes; persistence continues after navigation.
"""

import logging
import time
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Union

from learning_session_orchestrator.navigation_config import default_section, sections_for
from learning_session_orchestrator.progress_store import QuizResult, SyncStatus
from learning_session_orchestrator.session_state import (
    LEARNING_MODES,
    TUTOR_SCREENS,
    AppState,
    AuthUser,
    PdfContext,
    Role,
    SessionState,
    TutorQuestionTrigger,
    screen_allowed,
)

logger = logging.getLogger(__name__)

_MODE_EXITS = frozenset({AppState.LEARNING_MODE_SELECTION, AppState.DASHBOARD, AppState.LOGIN})

ALLOWED_TRANSITIONS: Dict[AppState, FrozenSet[AppState]] = {
    AppState.LOGIN: frozenset({AppState.ONBOARDING, AppState.DASHBOARD}),
    AppState.ONBOARDING: frozenset({AppState.DASHBOARD, AppState.LOGIN}),
    AppState.DASHBOARD: frozenset({
        AppState.DASHBOARD,
        AppState.CHAPTER,
        AppState.LEARNING_MODE_SELECTION,
        AppState.CORE_DESIGN,
        AppState.LOGIN,
    }),
    AppState.CHAPTER: frozenset({AppState.QUIZ, AppState.DASHBOARD, AppState.LOGIN}),
    AppState.QUIZ: frozenset({AppState.CHAPTER, AppState.DASHBOARD, AppState.LOGIN}),
    AppState.LEARNING_MODE_SELECTION: LEARNING_MODES | _MODE_EXITS,
    # Teacher sub-flow is linear with back-edges to the prior step only
    AppState.CORE_DESIGN: frozenset({AppState.TEACHING_DOCUMENT, AppState.DASHBOARD, AppState.LOGIN}),
    AppState.TEACHING_DOCUMENT: frozenset({AppState.CORE_DESIGN, AppState.TASK_CONFIGURATION, AppState.LOGIN}),
    AppState.TASK_CONFIGURATION: frozenset({AppState.TEACHING_DOCUMENT, AppState.DASHBOARD, AppState.LOGIN}),
}
for _mode in LEARNING_MODES:
    # switch_mode goes straight from one mode to another
    ALLOWED_TRANSITIONS[_mode] = LEARNING_MODES | _MODE_EXITS

BACK_TARGETS: Dict[AppState, AppState] = {
    AppState.QUIZ: AppState.CHAPTER,
    AppState.TEACHING_DOCUMENT: AppState.CORE_DESIGN,
    AppState.TASK_CONFIGURATION: AppState.TEACHING_DOCUMENT,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class NavigationController:
    """
    Top-level screen state machine for one authenticated session.

    Collaborators are optional so the controller also runs offline:
    - sync_engine: ProgressSyncEngine receiving completion writes
    - channel: TutorChannel that carries ask-tutor triggers
    - publisher: CoursePublisher for the teacher's publish action
    """

    def __init__(
        self,
        sync_engine=None,
        channel=None,
        publisher=None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.sync_engine = sync_engine
        self.channel = channel
        self.publisher = publisher
        self.clock = clock

        self.state = SessionState()
        self._deep_link: Dict[str, str] = {}
        self._last_trigger_timestamp = 0

    # -------------------------------------------------------------------------
    # Derived state
    # -------------------------------------------------------------------------

    @property
    def app_state(self) -> AppState:
        return self.state.app_state

    @property
    def tutor_visible(self) -> bool:
        """Tutor sidebar is shown on mode selection and every mode screen."""
        return self.state.app_state in TUTOR_SCREENS

    @property
    def sidebar_hidden(self) -> bool:
        return self.state.app_state in TUTOR_SCREENS

    @property
    def available_sections(self) -> List[str]:
        return sections_for(self.state.role)

    # -------------------------------------------------------------------------
    # Core transition
    # -------------------------------------------------------------------------

    def _refuse(self, target: Union[AppState, str], reason: str) -> bool:
        logger.debug(
            f"🚫 [Navigation] Refused {self.state.app_state.value} -> "
            f"{getattr(target, 'value', target)}: {reason}"
        )
        return False

    def _can_enter(self, target: AppState) -> Optional[str]:
        """Reason the target is unreachable from here, or None if it is reachable."""
        if self.state.loading:
            return "auth is loading"
        if not screen_allowed(self.state.role, target):
            return f"{target.value} is not a {self.state.role.value} screen"
        if target not in ALLOWED_TRANSITIONS.get(self.state.app_state, frozenset()):
            return "no such edge"
        if target in LEARNING_MODES and self.state.pdf_context is None:
            return "no pdf context"
        return None

    def _transition(self, target: AppState) -> bool:
        reason = self._can_enter(target)
        if reason:
            return self._refuse(target, reason)

        previous = self.state.app_state
        self.state.app_state = target
        if target == AppState.DASHBOARD:
            self.state.current_chapter = None
        logger.debug(f"🧭 [Navigation] {previous.value} -> {target.value}")
        return True

    def _go_to_dashboard(self, section: Optional[str] = None) -> bool:
        if not self._transition(AppState.DASHBOARD):
            return False
        if section:
            self.state.active_section = section
        return True

    # -------------------------------------------------------------------------
    # Auth and deep links
    # -------------------------------------------------------------------------

    def sync_auth(self, user: Optional[AuthUser], loading: bool = False) -> bool:
        """
        Reconcile with the auth collaborator.

        Returns:
            True if the screen changed
        """
        if loading:
            self.state.loading = True
            return False
        self.state.loading = False

        if user is None:
            if self.state.user is None and self.state.app_state == AppState.LOGIN:
                return False
            logger.info("👋 [Navigation] Signed out, back to login")
            self.state = SessionState()
            self._last_trigger_timestamp = 0
            return True

        if self.state.user is None or self.state.user.id != user.id:
            return self._land(user)

        self.state.user = user
        if self.state.app_state == AppState.ONBOARDING and not user.needs_onboarding:
            return self.complete_onboarding()
        return False

    def _land(self, user: AuthUser) -> bool:
        """Pick the first screen for a freshly authenticated user."""
        self.state = SessionState(role=user.role, user=user)
        self._last_trigger_timestamp = 0

        if user.role != Role.TEACHER and user.needs_onboarding:
            self.state.app_state = AppState.ONBOARDING
        else:
            # Teachers skip onboarding unconditionally
            self.state.app_state = AppState.DASHBOARD
            self.state.active_section = default_section(user.role)
            if self._deep_link:
                self.apply_deep_link(self._deep_link)

        logger.info(
            f"🔐 [Navigation] {user.role.value} {user.id[:20]} landed on {self.state.app_state.value}"
        )
        return True

    def complete_onboarding(self) -> bool:
        if self.state.app_state != AppState.ONBOARDING:
            return self._refuse(AppState.DASHBOARD, "not onboarding")
        return self._go_to_dashboard(default_section(self.state.role))

    def apply_deep_link(self, query: Mapping[str, str]) -> bool:
        """
        Re-derive the dashboard section from `section` / `courseTab`.

        Idempotent: the same query always yields the same state.

        Returns:
            True if the section or course tab changed
        """
        self._deep_link = {k: v for k, v in query.items() if k in ("section", "courseTab") and v}
        before = (self.state.active_section, self.state.course_tab)

        section = self._deep_link.get("section")
        if section:
            self.state.active_section = section
        elif self.state.role == Role.TEACHER:
            self.state.active_section = "overview"
        self.state.course_tab = self._deep_link.get("courseTab")

        changed = before != (self.state.active_section, self.state.course_tab)
        if changed:
            logger.debug(f"🔗 [Navigation] Deep link -> section={self.state.active_section} tab={self.state.course_tab}")
        return changed

    def change_section(self, section: str) -> bool:
        """Sidebar navigation: show a dashboard section."""
        if self.sidebar_hidden:
            return self._refuse(AppState.DASHBOARD, "sidebar hidden on this screen")
        return self._go_to_dashboard(section)

    # -------------------------------------------------------------------------
    # Chapters and quizzes
    # -------------------------------------------------------------------------

    def start_chapter(self, chapter_id: str) -> bool:
        if not self._transition(AppState.CHAPTER):
            return False
        self.state.current_chapter = chapter_id
        return True

    def start_quiz(self) -> bool:
        return self._transition(AppState.QUIZ)

    def update_chapter_progress(self, progress: float):
        """
        Report reading progress on the open chapter.

        Returns the write task, the SyncStatus of a cache-only write when no
        event loop is running, or None when there is nothing to write.
        """
        chapter = self.state.current_chapter
        if self.state.app_state != AppState.CHAPTER or not chapter or self.sync_engine is None:
            return None
        return self.sync_engine.update_progress(chapter, progress, False, 0)

    async def complete_chapter(self, time_spent: int = 0) -> Optional[SyncStatus]:
        """
        Mark the open chapter complete and return to the dashboard.

        The screen changes before the write finishes; the returned status
        is that of the write.
        """
        chapter = self.state.current_chapter
        if self.state.app_state != AppState.CHAPTER or not chapter:
            self._refuse(AppState.DASHBOARD, "no open chapter")
            return None

        task = None
        if self.sync_engine is not None:
            task = self.sync_engine.update_progress(chapter, 100, True, time_spent)
        self._go_to_dashboard()
        if task is None:
            return None
        return await task

    async def complete_quiz(self, result: QuizResult) -> bool:
        if self.state.app_state != AppState.QUIZ:
            return self._refuse(AppState.DASHBOARD, "not in a quiz")
        if self.sync_engine is not None:
            self.sync_engine.record_quiz_result(result.unit_id, result.score, result.answers, result.time_spent)
        return self._go_to_dashboard()

    # -------------------------------------------------------------------------
    # Multi-modal lessons
    # -------------------------------------------------------------------------

    def personalize_pdf(self, pdf_context: PdfContext) -> bool:
        """Start a multi-modal lesson: set the pdf context and open mode selection."""
        if self.state.app_state not in (AppState.DASHBOARD, AppState.LEARNING_MODE_SELECTION):
            return self._refuse(AppState.LEARNING_MODE_SELECTION, "lessons start from the dashboard")
        reason = self._can_enter(AppState.LEARNING_MODE_SELECTION)
        if reason:
            return self._refuse(AppState.LEARNING_MODE_SELECTION, reason)

        self.state.pdf_context = pdf_context
        return self._transition(AppState.LEARNING_MODE_SELECTION)

    def select_learning_mode(self, mode: Union[AppState, str]) -> bool:
        """
        Enter a mode screen. Requires a pdf context.

        An unknown mode name falls back to the dashboard.
        """
        try:
            target = AppState(mode)
        except ValueError:
            target = None
        if target not in LEARNING_MODES:
            logger.warning(f"⚠️ [Navigation] Unknown learning mode {mode!r}, returning to dashboard")
            return self.back_to_dashboard()
        return self._transition(target)

    def switch_mode(self, mode: Union[AppState, str]) -> bool:
        """Jump from one mode screen to another, keeping the pdf context."""
        if self.state.app_state not in LEARNING_MODES:
            return self._refuse(mode, "not on a mode screen")
        return self.select_learning_mode(mode)

    def back_to_dashboard(self) -> bool:
        """Leave the lesson: clear the pdf context and reset the section."""
        if self.state.app_state not in TUTOR_SCREENS:
            return self._refuse(AppState.DASHBOARD, "not in a lesson")
        if not self._go_to_dashboard(default_section(self.state.role)):
            return False
        self.state.pdf_context = None
        self.state.tutor_question_trigger = None
        return True

    async def complete_learning_mode(
        self,
        progress: float,
        time_spent: int = 0,
        completed: bool = False,
    ) -> Optional[SyncStatus]:
        """Persist progress of the current lesson without leaving the screen."""
        if self.state.app_state not in LEARNING_MODES or self.state.pdf_context is None:
            self._refuse(self.state.app_state, "not on a mode screen")
            return None
        if self.sync_engine is None:
            return None
        return await self.sync_engine.update_progress(
            self.state.pdf_context.file_name, progress, completed, time_spent
        )

    def ask_tutor(self, selected_text: str, context: str = "") -> Optional[TutorQuestionTrigger]:
        """
        Ask the tutor about selected text.

        Creates a fresh trigger (its timestamp is the dedup key) and
        publishes it on the tutor channel.
        """
        if not selected_text or self.state.app_state not in TUTOR_SCREENS:
            self._refuse(self.state.app_state, "tutor not available here")
            return None

        timestamp = max(self.clock(), self._last_trigger_timestamp + 1)
        self._last_trigger_timestamp = timestamp
        trigger = TutorQuestionTrigger(selected_text=selected_text, context=context, timestamp=timestamp)
        self.state.tutor_question_trigger = trigger

        if self.channel is not None:
            self.channel.ask_tutor(selected_text, context, timestamp=timestamp)
        return trigger

    # -------------------------------------------------------------------------
    # Teacher course design
    # -------------------------------------------------------------------------

    def start_core_design(self, draft: Mapping) -> bool:
        if self.state.app_state == AppState.DASHBOARD and self.state.active_section != "course-design":
            return self._refuse(AppState.CORE_DESIGN, "course design starts from the course-design section")
        if not self._transition(AppState.CORE_DESIGN):
            return False
        self.state.course_design = dict(draft)
        return True

    def complete_core_design(self, design: Mapping) -> bool:
        if self.state.app_state != AppState.CORE_DESIGN:
            return self._refuse(AppState.TEACHING_DOCUMENT, "not in core design")
        if not self._transition(AppState.TEACHING_DOCUMENT):
            return False
        self.state.course_design = {**self.state.course_design, **design}
        return True

    def complete_teaching_document(self) -> bool:
        if self.state.app_state != AppState.TEACHING_DOCUMENT:
            return self._refuse(AppState.TASK_CONFIGURATION, "not on the teaching document")
        return self._transition(AppState.TASK_CONFIGURATION)

    async def publish_course(self) -> bool:
        """
        Publish the drafted course and land on the courses section.

        Publishing is best-effort: a failed write is logged and the teacher
        still returns to the dashboard.

        Returns:
            True if the course was stored
        """
        if self.state.app_state != AppState.TASK_CONFIGURATION:
            return self._refuse(AppState.DASHBOARD, "not on task configuration")

        published = False
        if self.publisher is not None and self.state.user is not None:
            try:
                published = await self.publisher.publish(self.state.user.id, self.state.course_design) is not None
            except Exception as e:
                logger.error(f"❌ [Navigation] Course publish failed: {e}", exc_info=True)

        self._go_to_dashboard("courses")
        self.state.course_design = {}
        return published

    # -------------------------------------------------------------------------
    # Back
    # -------------------------------------------------------------------------

    def back(self) -> bool:
        """Context-dependent back action."""
        current = self.state.app_state
        if current in LEARNING_MODES:
            return self._transition(AppState.LEARNING_MODE_SELECTION)
        if current == AppState.LEARNING_MODE_SELECTION:
            return self.back_to_dashboard()
        if current == AppState.CHAPTER:
            return self._go_to_dashboard()
        if current == AppState.CORE_DESIGN:
            return self._go_to_dashboard("course-design")
        target = BACK_TARGETS.get(current)
        if target is None:
            return self._refuse(current, "no back edge")
        return self._transition(target)
